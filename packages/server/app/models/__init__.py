# SQLModel definitions, imported here to ensure metadata is populated for Alembic.
from .base import StrIdMixin, TimestampMixin, SoftDeleteMixin  # noqa: F401
from .capsule import Capsule  # noqa: F401
from .membership import CapsuleMember, CapsuleFollower, CapsuleMemberRequest  # noqa: F401
from .social import Friendship, FriendRequest, UserFollow, UserBlock  # noqa: F401
