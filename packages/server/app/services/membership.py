"""
Capsule membership workflows.

Every public operation validates in a fixed order before it writes anything:
actor, then inputs, then capsule existence, then permission, then state.
Side effects (invite notifications, knowledge refreshes) are handed to the
dispatcher only after the authoritative write has committed.
"""

from __future__ import annotations

from functools import partial
from typing import Optional

import structlog

from app.core.dispatch import SideEffectDispatcher
from app.core.errors import MembershipError
from app.services.collaborators import InviteNotifier, KnowledgeRefreshQueue
from app.services.permissions import (
    RoleHolder,
    can_assign_role,
    can_change_role,
    can_remove_member,
    capabilities_for,
    has_capability,
    resolve_effective_role,
    to_db_role,
    to_ui_role,
)
from app.services.validation import (
    SLUG_MAX_ATTEMPTS,
    build_slug_candidate,
    normalize_capsule_name,
    normalize_id,
    normalize_message,
    parse_member_role,
    parse_policy,
    require_actor,
    require_id,
    resolve_media_url,
)
from app.stores.base import CapsuleStore, MembershipRecordStore
from app.stores.records import CapsuleRecord, FollowerRecord, MemberRecord, RequestRecord
from capsules_shared.schemas.capsules import (
    REQUEST_TRANSITIONS,
    Capability,
    CapsuleFollowerView,
    CapsuleInfo,
    CapsuleListItem,
    CapsuleMemberView,
    CapsuleOwnership,
    MemberDbRole,
    MemberRequestView,
    MemberRole,
    MembershipCounts,
    MembershipPolicy,
    MembershipState,
    RequestOrigin,
    RequestStatus,
    ViewerInvite,
    ViewerState,
)

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# View builders
# ---------------------------------------------------------------------------

def request_view(request: RequestRecord) -> MemberRequestView:
    role = to_ui_role(request.role)
    if role is None or role == MemberRole.FOUNDER:
        role = MemberRole.MEMBER
    return MemberRequestView(
        id=request.id,
        capsule_id=request.capsule_id,
        requester_id=request.requester_id,
        status=request.status,
        origin=request.origin,
        role=role,
        initiator_id=request.initiator_id,
        message=request.message,
        created_at=request.created_at,
        responded_at=request.responded_at,
        responded_by=request.responded_by,
        approved_at=request.approved_at,
        declined_at=request.declined_at,
        cancelled_at=request.cancelled_at,
    )


def capsule_info(capsule: CapsuleRecord, media_origin: Optional[str] = None) -> CapsuleInfo:
    return CapsuleInfo(
        id=capsule.id,
        name=capsule.name,
        slug=capsule.slug,
        owner_id=capsule.owner_id,
        membership_policy=capsule.membership_policy,
        banner_url=resolve_media_url(capsule.banner_url, media_origin),
        store_banner_url=resolve_media_url(capsule.store_banner_url, media_origin),
        promo_tile_url=resolve_media_url(capsule.promo_tile_url, media_origin),
        logo_url=resolve_media_url(capsule.logo_url, media_origin),
    )


def member_views(capsule: CapsuleRecord, members: list[MemberRecord]) -> list[CapsuleMemberView]:
    """Effective members, the owner first as founder even without a stored row."""
    owner_row = next((m for m in members if m.user_id == capsule.owner_id), None)
    views = [
        CapsuleMemberView(
            user_id=capsule.owner_id,
            role=MemberRole.FOUNDER,
            joined_at=owner_row.joined_at if owner_row else capsule.created_at,
            is_owner=True,
        )
    ]
    for member in members:
        if member.user_id == capsule.owner_id:
            continue
        role = resolve_effective_role(capsule.owner_id, member.user_id, member.role)
        if role is None:
            continue
        views.append(CapsuleMemberView(user_id=member.user_id, role=role, joined_at=member.joined_at))
    return views


class MembershipService:
    def __init__(
        self,
        capsules: CapsuleStore,
        records: MembershipRecordStore,
        *,
        dispatcher: SideEffectDispatcher,
        notifier: Optional[InviteNotifier] = None,
        knowledge: Optional[KnowledgeRefreshQueue] = None,
        media_origin: Optional[str] = None,
        message_limit: int = 500,
    ) -> None:
        self.capsules = capsules
        self.records = records
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.knowledge = knowledge
        self.media_origin = media_origin or None
        self.message_limit = message_limit

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_capsule(self, capsule_id: str) -> CapsuleRecord:
        capsule = await self.capsules.get_capsule(capsule_id)
        if capsule is None:
            raise MembershipError.not_found("Capsule not found.")
        return capsule

    async def _holder(self, capsule: CapsuleRecord, user_id: str) -> RoleHolder:
        if user_id == capsule.owner_id:
            return RoleHolder(user_id=user_id, role=MemberRole.FOUNDER, is_owner=True)
        member = await self.records.get_member(capsule.id, user_id)
        role = resolve_effective_role(capsule.owner_id, user_id, member.role if member else None)
        return RoleHolder(user_id=user_id, role=role)

    @staticmethod
    def _require(holder: RoleHolder, capability: Capability, message: str) -> None:
        if not has_capability(holder.role, capability):
            raise MembershipError.forbidden(message)

    async def _grant_membership(
        self, capsule: CapsuleRecord, user_id: str, role: MemberDbRole
    ) -> MemberRecord:
        member = await self.records.upsert_member(capsule.id, user_id, role)
        # close any invite or request still pending for this user
        pending = await self.records.get_request(capsule.id, user_id)
        if pending is not None and pending.is_pending:
            await self.records.set_request_status(
                pending.id, RequestStatus.APPROVED, responded_by=user_id
            )
        # membership supersedes following
        await self.records.delete_follower(capsule.id, user_id)
        self._schedule_refresh(capsule)
        return member

    def _schedule_refresh(self, capsule: CapsuleRecord) -> None:
        if self.knowledge is None:
            return
        self.dispatcher.submit(
            "knowledge_refresh",
            partial(self.knowledge.enqueue_knowledge_refresh, capsule.id, capsule.name),
            capsule_id=capsule.id,
        )

    def _schedule_invite_notification(self, capsule: CapsuleRecord, request: RequestRecord) -> None:
        if self.notifier is None:
            return
        self.dispatcher.submit(
            "notify_invite",
            partial(self.notifier.notify_invite, request_view(request), capsule_name=capsule.name),
            capsule_id=capsule.id,
            request_id=request.id,
        )

    async def _load_request(
        self, capsule: CapsuleRecord, request_id: str, message: str
    ) -> RequestRecord:
        request = await self.records.get_request_by_id(request_id)
        if request is None or request.capsule_id != capsule.id:
            raise MembershipError.not_found(message)
        return request

    @staticmethod
    def _ensure_pending(request: RequestRecord, message: str) -> None:
        if not REQUEST_TRANSITIONS[request.status]:
            raise MembershipError.conflict(message)

    async def _build_state(self, capsule: CapsuleRecord, viewer_id: Optional[str]) -> MembershipState:
        members = await self.records.list_members(capsule.id)
        followers = await self.records.list_followers(capsule.id)
        pending = await self.records.list_requests(capsule.id, status=RequestStatus.PENDING)

        members_view = member_views(capsule, members)
        member_ids = {view.user_id for view in members_view}
        followers_view = [
            CapsuleFollowerView(user_id=f.user_id, followed_at=f.created_at)
            for f in followers
            if f.user_id not in member_ids
        ]
        viewer_requests = [r for r in pending if r.origin == RequestOrigin.VIEWER_REQUEST]
        invites = [r for r in pending if r.origin == RequestOrigin.OWNER_INVITE]

        viewer = ViewerState()
        viewer_request: Optional[RequestRecord] = None
        if viewer_id:
            viewer_request = await self.records.get_request(capsule.id, viewer_id)
            viewer = self._viewer_state(capsule, viewer_id, members, followers, viewer_request)

        permissions = viewer.permissions
        return MembershipState(
            capsule=capsule_info(capsule, self.media_origin),
            viewer=viewer,
            counts=MembershipCounts(
                members=len(members_view),
                pending_requests=len(viewer_requests),
                followers=len(followers_view),
            ),
            members=members_view,
            followers=followers_view,
            requests=[request_view(r) for r in viewer_requests] if permissions.can_approve_requests else [],
            invites=[request_view(r) for r in invites] if permissions.can_invite_members else [],
            viewer_request=request_view(viewer_request) if viewer_request else None,
        )

    @staticmethod
    def _viewer_state(
        capsule: CapsuleRecord,
        viewer_id: str,
        members: list[MemberRecord],
        followers: list[FollowerRecord],
        request: Optional[RequestRecord],
    ) -> ViewerState:
        is_owner = viewer_id == capsule.owner_id
        member = next((m for m in members if m.user_id == viewer_id), None)
        role = resolve_effective_role(capsule.owner_id, viewer_id, member.role if member else None)
        is_member = is_owner or role is not None
        follower = None if is_member else next((f for f in followers if f.user_id == viewer_id), None)
        permissions = capabilities_for(role if is_member else None)
        request_pending = request is not None and request.is_pending

        return ViewerState(
            user_id=viewer_id,
            is_owner=is_owner,
            is_member=is_member,
            is_follower=follower is not None,
            can_manage=permissions.can_customize,
            can_request=(
                not is_member
                and capsule.membership_policy != MembershipPolicy.INVITE_ONLY
                and not request_pending
            ),
            can_follow=not is_member and follower is None,
            role=role if is_member else None,
            member_since=(member.joined_at if member else capsule.created_at) if is_member else None,
            followed_at=follower.created_at if follower else None,
            request_status=request.status if request else None,
            request_id=request.id if request else None,
            permissions=permissions,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_membership(self, viewer_id: Optional[str], capsule_id: str) -> MembershipState:
        """Membership state as seen by viewer_id (anonymous when None)."""
        viewer = normalize_id(viewer_id)
        capsule = await self._load_capsule(require_id(capsule_id, MembershipError, "capsule id"))
        return await self._build_state(capsule, viewer)

    async def list_capsules_for_user(self, user_id: str) -> list[CapsuleListItem]:
        """Owned, joined and followed capsules, de-duplicated in that order."""
        user_id = require_actor(user_id, MembershipError)

        owned = await self.capsules.list_owned_capsules(user_id)
        memberships = await self.records.list_memberships_for_user(user_id)
        follows = await self.records.list_followed_capsules(user_id)

        ownership: dict[str, CapsuleOwnership] = {c.id: CapsuleOwnership.OWNER for c in owned}
        stored_roles: dict[str, Optional[MemberDbRole]] = {}
        for member in memberships:
            if member.capsule_id not in ownership:
                ownership[member.capsule_id] = CapsuleOwnership.MEMBER
                stored_roles[member.capsule_id] = member.role
        for follow in follows:
            ownership.setdefault(follow.capsule_id, CapsuleOwnership.FOLLOWER)

        known = {c.id: c for c in owned}
        missing = [capsule_id for capsule_id in ownership if capsule_id not in known]
        for capsule in await self.capsules.get_capsules(missing):
            known[capsule.id] = capsule

        items: list[CapsuleListItem] = []
        for capsule_id, kind in ownership.items():
            capsule = known.get(capsule_id)
            if capsule is None:
                continue
            role: Optional[MemberRole] = None
            if kind == CapsuleOwnership.OWNER or capsule.owner_id == user_id:
                kind, role = CapsuleOwnership.OWNER, MemberRole.FOUNDER
            elif kind == CapsuleOwnership.MEMBER:
                role = resolve_effective_role(capsule.owner_id, user_id, stored_roles.get(capsule_id))
            info = capsule_info(capsule, self.media_origin)
            items.append(
                CapsuleListItem(
                    id=info.id,
                    name=info.name,
                    slug=info.slug,
                    owner_id=info.owner_id,
                    ownership=kind,
                    role=role,
                    membership_policy=info.membership_policy,
                    banner_url=info.banner_url,
                    logo_url=info.logo_url,
                )
            )
        return items

    async def list_viewer_invites(self, user_id: str) -> list[ViewerInvite]:
        """Pending invitations addressed to user_id."""
        user_id = require_actor(user_id, MembershipError)
        invites = await self.records.list_requests_for_user(
            user_id, status=RequestStatus.PENDING, origin=RequestOrigin.OWNER_INVITE
        )
        if not invites:
            return []
        capsules = {
            c.id: c for c in await self.capsules.get_capsules([i.capsule_id for i in invites])
        }
        return [
            ViewerInvite(
                request=request_view(invite),
                capsule=capsule_info(capsules[invite.capsule_id], self.media_origin),
            )
            for invite in invites
            if invite.capsule_id in capsules
        ]

    # ------------------------------------------------------------------
    # Capsule lifecycle
    # ------------------------------------------------------------------

    async def create_capsule(
        self,
        owner_id: str,
        name: Optional[str],
        *,
        membership_policy: str | MembershipPolicy = MembershipPolicy.REQUEST_APPROVAL,
    ) -> MembershipState:
        owner_id = require_actor(owner_id, MembershipError)
        policy = parse_policy(membership_policy, MembershipError)
        normalized_name = normalize_capsule_name(name)

        capsule: Optional[CapsuleRecord] = None
        for attempt in range(SLUG_MAX_ATTEMPTS + 1):
            slug = build_slug_candidate(normalized_name, attempt)
            capsule = await self.capsules.insert_capsule(
                name=normalized_name,
                slug=slug,
                owner_id=owner_id,
                membership_policy=policy,
            )
            if capsule is not None:
                break
        if capsule is None:
            raise MembershipError.conflict(
                "Couldn't reserve a link for this capsule. Try a different name."
            )

        await self.records.upsert_member(capsule.id, owner_id, MemberDbRole.OWNER)
        log.info("capsule.created", capsule_id=capsule.id, owner_id=owner_id, slug=capsule.slug)
        return await self._build_state(capsule, owner_id)

    async def set_membership_policy(
        self, actor_id: str, capsule_id: str, policy: str | MembershipPolicy
    ) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        new_policy = parse_policy(policy, MembershipError)
        capsule = await self._load_capsule(capsule_id)
        actor = await self._holder(capsule, actor_id)
        self._require(actor, Capability.CHANGE_ROLES, "You don't have permission to change the membership policy.")

        updated = await self.capsules.update_membership_policy(capsule.id, new_policy)
        if updated is None:
            raise MembershipError.not_found("Capsule not found.")
        log.info("capsule.policy_changed", capsule_id=capsule.id, actor_id=actor_id, policy=new_policy.value)
        return await self._build_state(updated, actor_id)

    # ------------------------------------------------------------------
    # Viewer-initiated
    # ------------------------------------------------------------------

    async def request_membership(
        self, actor_id: str, capsule_id: str, message: Optional[str] = None
    ) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        text = normalize_message(message, self.message_limit)
        capsule = await self._load_capsule(capsule_id)

        actor = await self._holder(capsule, actor_id)
        if actor.is_owner:
            raise MembershipError.conflict("You already own this capsule.")
        if actor.role is not None:
            raise MembershipError.conflict("You're already a member of this capsule.")
        if capsule.membership_policy == MembershipPolicy.INVITE_ONLY:
            raise MembershipError.forbidden("This capsule is invite only.")

        if capsule.membership_policy == MembershipPolicy.OPEN:
            await self._grant_membership(capsule, actor_id, MemberDbRole.MEMBER)
            log.info("capsule.member.joined", capsule_id=capsule.id, user_id=actor_id, policy="open")
            return await self._build_state(capsule, actor_id)

        existing = await self.records.get_request(capsule.id, actor_id)
        if existing and existing.is_pending and existing.origin == RequestOrigin.OWNER_INVITE:
            raise MembershipError.conflict(
                "You've already been invited to this capsule. Accept the invitation instead."
            )

        request = await self.records.upsert_request(
            capsule_id=capsule.id,
            requester_id=actor_id,
            origin=RequestOrigin.VIEWER_REQUEST,
            initiator_id=actor_id,
            role=MemberDbRole.MEMBER,
            message=text,
        )
        log.info("capsule.request.created", capsule_id=capsule.id, request_id=request.id, requester_id=actor_id)
        return await self._build_state(capsule, actor_id)

    async def cancel_request(self, actor_id: str, capsule_id: str) -> MembershipState:
        """Withdraw the actor's own pending join request."""
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        capsule = await self._load_capsule(capsule_id)

        request = await self.records.get_request(capsule.id, actor_id)
        if request is None or request.origin != RequestOrigin.VIEWER_REQUEST:
            raise MembershipError.not_found("You don't have a request for this capsule.")
        self._ensure_pending(request, "This request has already been answered.")

        cancelled = await self.records.set_request_status(
            request.id, RequestStatus.CANCELLED, responded_by=actor_id
        )
        if cancelled is None:
            raise MembershipError.conflict("This request has already been answered.")
        log.info("capsule.request.cancelled", capsule_id=capsule.id, request_id=request.id)
        return await self._build_state(capsule, actor_id)

    async def follow_capsule(self, actor_id: str, capsule_id: str) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        capsule = await self._load_capsule(capsule_id)

        actor = await self._holder(capsule, actor_id)
        if actor.is_owner or actor.role is not None:
            # members already see everything a follower would
            return await self._build_state(capsule, actor_id)

        await self.records.upsert_follower(capsule.id, actor_id)
        log.info("capsule.follower.added", capsule_id=capsule.id, user_id=actor_id)
        return await self._build_state(capsule, actor_id)

    async def unfollow_capsule(self, actor_id: str, capsule_id: str) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        capsule = await self._load_capsule(capsule_id)

        if await self.records.delete_follower(capsule.id, actor_id):
            log.info("capsule.follower.removed", capsule_id=capsule.id, user_id=actor_id)
        return await self._build_state(capsule, actor_id)

    async def leave_capsule(self, actor_id: str, capsule_id: str) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        capsule = await self._load_capsule(capsule_id)

        if actor_id == capsule.owner_id:
            raise MembershipError.conflict("The founder can't leave their own capsule.")
        if not await self.records.delete_member(capsule.id, actor_id):
            raise MembershipError.not_found("You're not a member of this capsule.")

        self._schedule_refresh(capsule)
        log.info("capsule.member.left", capsule_id=capsule.id, user_id=actor_id)
        return await self._build_state(capsule, actor_id)

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    async def invite_member(self, actor_id: str, capsule_id: str, target_id: str) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        target_id = require_id(target_id, MembershipError, "member id")
        capsule = await self._load_capsule(capsule_id)

        actor = await self._holder(capsule, actor_id)
        self._require(actor, Capability.INVITE_MEMBERS, "You don't have permission to invite members.")

        target = await self._holder(capsule, target_id)
        if target.is_owner:
            raise MembershipError.conflict("That person already owns this capsule.")
        if target.role is not None:
            raise MembershipError.conflict("That person is already a member.")

        existing = await self.records.get_request(capsule.id, target_id)
        if existing and existing.is_pending and existing.origin == RequestOrigin.VIEWER_REQUEST:
            raise MembershipError.conflict(
                "That person has already asked to join. Review their request instead."
            )

        invite = await self.records.upsert_request(
            capsule_id=capsule.id,
            requester_id=target_id,
            origin=RequestOrigin.OWNER_INVITE,
            initiator_id=actor_id,
            role=MemberDbRole.MEMBER,
            message=None,
        )
        self._schedule_invite_notification(capsule, invite)
        log.info("capsule.invite.created", capsule_id=capsule.id, request_id=invite.id, actor_id=actor_id)
        return await self._build_state(capsule, actor_id)

    async def _respond_to_invite(
        self, actor_id: str, capsule_id: str, request_id: str, status: RequestStatus
    ) -> tuple[CapsuleRecord, str, RequestRecord]:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        request_id = require_id(request_id, MembershipError, "invitation id")
        capsule = await self._load_capsule(capsule_id)

        invite = await self._load_request(capsule, request_id, "Invitation not found.")
        if invite.requester_id != actor_id or invite.origin != RequestOrigin.OWNER_INVITE:
            raise MembershipError.not_found("Invitation not found.")
        self._ensure_pending(invite, "This invitation has already been answered.")
        holder = await self._holder(capsule, actor_id)
        if holder.is_owner or holder.role is not None:
            raise MembershipError.conflict("You're already a member of this capsule.")

        # compare-and-set: a concurrent or repeated answer loses here
        updated = await self.records.set_request_status(invite.id, status, responded_by=actor_id)
        if updated is None:
            raise MembershipError.conflict("This invitation has already been answered.")
        return capsule, actor_id, updated

    async def accept_invite(self, actor_id: str, capsule_id: str, request_id: str) -> MembershipState:
        capsule, actor_id, invite = await self._respond_to_invite(
            actor_id, capsule_id, request_id, RequestStatus.APPROVED
        )
        await self._grant_membership(capsule, actor_id, MemberDbRole.MEMBER)
        log.info("capsule.invite.accepted", capsule_id=capsule.id, request_id=invite.id, user_id=actor_id)
        return await self._build_state(capsule, actor_id)

    async def decline_invite(self, actor_id: str, capsule_id: str, request_id: str) -> MembershipState:
        capsule, actor_id, invite = await self._respond_to_invite(
            actor_id, capsule_id, request_id, RequestStatus.DECLINED
        )
        log.info("capsule.invite.declined", capsule_id=capsule.id, request_id=invite.id, user_id=actor_id)
        return await self._build_state(capsule, actor_id)

    # ------------------------------------------------------------------
    # Requests (admin side)
    # ------------------------------------------------------------------

    async def _review_request(
        self, actor_id: str, capsule_id: str, request_id: str
    ) -> tuple[CapsuleRecord, RoleHolder, RequestRecord]:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        request_id = require_id(request_id, MembershipError, "request id")
        capsule = await self._load_capsule(capsule_id)

        actor = await self._holder(capsule, actor_id)
        self._require(actor, Capability.APPROVE_REQUESTS, "You don't have permission to review requests.")

        request = await self._load_request(capsule, request_id, "Request not found.")
        if request.origin != RequestOrigin.VIEWER_REQUEST:
            raise MembershipError.conflict("Invitations can only be answered by the person invited.")
        self._ensure_pending(request, "This request has already been answered.")
        target = await self._holder(capsule, request.requester_id)
        if target.is_owner or target.role is not None:
            raise MembershipError.conflict("That person is already a member.")
        return capsule, actor, request

    async def approve_request(self, actor_id: str, capsule_id: str, request_id: str) -> MembershipState:
        capsule, actor, request = await self._review_request(actor_id, capsule_id, request_id)

        role = to_ui_role(request.role) or MemberRole.MEMBER
        if not can_assign_role(actor, role):
            role = MemberRole.MEMBER

        updated = await self.records.set_request_status(
            request.id, RequestStatus.APPROVED, responded_by=actor.user_id
        )
        if updated is None:
            raise MembershipError.conflict("This request has already been answered.")

        await self._grant_membership(capsule, request.requester_id, to_db_role(role))
        log.info(
            "capsule.request.approved",
            capsule_id=capsule.id,
            request_id=request.id,
            actor_id=actor.user_id,
            role=role.value,
        )
        return await self._build_state(capsule, actor.user_id)

    async def decline_request(self, actor_id: str, capsule_id: str, request_id: str) -> MembershipState:
        capsule, actor, request = await self._review_request(actor_id, capsule_id, request_id)

        updated = await self.records.set_request_status(
            request.id, RequestStatus.DECLINED, responded_by=actor.user_id
        )
        if updated is None:
            raise MembershipError.conflict("This request has already been answered.")
        log.info("capsule.request.declined", capsule_id=capsule.id, request_id=request.id, actor_id=actor.user_id)
        return await self._build_state(capsule, actor.user_id)

    # ------------------------------------------------------------------
    # Member management
    # ------------------------------------------------------------------

    async def remove_member(self, actor_id: str, capsule_id: str, member_id: str) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        member_id = require_id(member_id, MembershipError, "member id")
        capsule = await self._load_capsule(capsule_id)

        actor = await self._holder(capsule, actor_id)
        self._require(actor, Capability.REMOVE_MEMBERS, "You don't have permission to remove members.")

        if member_id == capsule.owner_id:
            raise MembershipError.conflict("The capsule founder can't be removed.")
        member = await self.records.get_member(capsule.id, member_id)
        if member is None:
            raise MembershipError.not_found("Member not found.")

        target = RoleHolder(
            user_id=member_id,
            role=resolve_effective_role(capsule.owner_id, member_id, member.role),
        )
        if not can_remove_member(actor, target):
            raise MembershipError.forbidden("You can only remove members ranked below you.")

        if not await self.records.delete_member(capsule.id, member_id):
            raise MembershipError.not_found("Member not found.")
        self._schedule_refresh(capsule)
        log.info("capsule.member.removed", capsule_id=capsule.id, actor_id=actor_id, member_id=member_id)
        return await self._build_state(capsule, actor_id)

    async def set_member_role(
        self, actor_id: str, capsule_id: str, member_id: str, role: str | MemberRole
    ) -> MembershipState:
        actor_id = require_actor(actor_id, MembershipError)
        capsule_id = require_id(capsule_id, MembershipError, "capsule id")
        member_id = require_id(member_id, MembershipError, "member id")
        new_role = parse_member_role(role, MembershipError)
        capsule = await self._load_capsule(capsule_id)

        actor = await self._holder(capsule, actor_id)
        self._require(actor, Capability.CHANGE_ROLES, "You don't have permission to change roles.")

        if member_id == capsule.owner_id:
            raise MembershipError.conflict("The founder's role can't be changed.")
        if new_role == MemberRole.FOUNDER:
            raise MembershipError.conflict("The founder role belongs to the capsule owner.")
        member = await self.records.get_member(capsule.id, member_id)
        if member is None:
            raise MembershipError.not_found("Member not found.")

        target = RoleHolder(
            user_id=member_id,
            role=resolve_effective_role(capsule.owner_id, member_id, member.role),
        )
        if not can_change_role(actor, target, new_role):
            raise MembershipError.forbidden("You can only assign roles below your own.")

        updated = await self.records.update_member_role(capsule.id, member_id, to_db_role(new_role))
        if updated is None:
            raise MembershipError.not_found("Member not found.")
        self._schedule_refresh(capsule)
        log.info(
            "capsule.member.role_changed",
            capsule_id=capsule.id,
            actor_id=actor_id,
            member_id=member_id,
            role=new_role.value,
        )
        return await self._build_state(capsule, actor_id)
