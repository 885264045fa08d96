"""Membership source client for an Open Cloud style group API.

Lists group members with their external role ids and the group's role
catalogue (role id, rank, name). Every request goes through the client's
token bucket and the retry policy; failures are classified into the
transient/fatal exception types the reconciler understands.
"""

import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from roster.clients.rate_limit import TokenBucket
from roster.config import get_settings
from roster.exceptions import (
    FatalExternalError,
    MalformedPageError,
    MembershipSourceError,
    TransientExternalError,
)
from roster.logging_config import get_logger
from roster.resilience import RetryConfig, call_with_retry

logger = get_logger(__name__)

_USER_PATH = re.compile(r"users/(\d+)")
_ROLE_PATH = re.compile(r"roles/(\d+)")


@dataclass(frozen=True)
class GroupMember:
    user_id: int
    role_id: int
    username: str | None = None


@dataclass(frozen=True)
class GroupRole:
    role_id: int
    rank: int
    name: str


@dataclass
class MemberListing:
    """Members of a group. ``complete`` is False when pages were lost."""

    members: list[GroupMember] = field(default_factory=list)
    complete: bool = True
    skipped_pages: int = 0

    def __iter__(self):
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)


@dataclass
class RoleCatalogue:
    """Roles of a group ordered by rank. ``complete`` is False when pages were lost."""

    roles: list[GroupRole] = field(default_factory=list)
    complete: bool = True
    skipped_pages: int = 0

    def __iter__(self):
        return iter(self.roles)

    def __len__(self) -> int:
        return len(self.roles)

    def rank_map(self) -> dict[int, int]:
        return {r.role_id: r.rank for r in self.roles}


def parse_member(entry: Any) -> GroupMember | None:
    """Parse one membership entry; entries without a user id are dropped."""
    if not isinstance(entry, dict):
        return None
    user_match = _USER_PATH.search(str(entry.get("user") or ""))
    if user_match is None:
        return None
    role_match = _ROLE_PATH.search(str(entry.get("role") or ""))
    username = entry.get("username")
    return GroupMember(
        user_id=int(user_match.group(1)),
        role_id=int(role_match.group(1)) if role_match else 0,
        username=username if isinstance(username, str) and username else None,
    )


def parse_role(entry: Any) -> GroupRole | None:
    if not isinstance(entry, dict):
        return None
    raw_id = entry.get("id")
    if raw_id is None:
        path_match = _ROLE_PATH.search(str(entry.get("path") or ""))
        raw_id = path_match.group(1) if path_match else None
    try:
        role_id = int(raw_id)
        rank = int(entry.get("rank", 0))
    except (TypeError, ValueError):
        return None
    name = entry.get("displayName") or entry.get("name") or ""
    return GroupRole(role_id=role_id, rank=rank, name=str(name))


class MembershipSourceClient:
    """
    Client for the external group membership API.

    The client owns request pacing: callers never sleep between calls.
    Use as an async context manager or call ``close()`` when done.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        page_size: int = 100,
        retry_config: RetryConfig | None = None,
        rate_limit_per_second: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._page_size = page_size
        self._retry_config = retry_config or RetryConfig()
        self._bucket = TokenBucket(rate=rate_limit_per_second)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls) -> "MembershipSourceClient":
        settings = get_settings()
        return cls(
            base_url=settings.membership_api_base_url,
            api_key=settings.membership_api_key,
            timeout=settings.membership_request_timeout,
            page_size=settings.membership_page_size,
            retry_config=RetryConfig(
                max_retries=settings.membership_max_retries,
                base_delay=settings.membership_retry_base_delay,
                max_delay=settings.membership_retry_max_delay,
            ),
            rate_limit_per_second=settings.membership_rate_limit_per_second,
        )

    async def __aenter__(self) -> "MembershipSourceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"x-api-key": self._api_key},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_once(self, path: str, params: dict[str, Any], page: int) -> Any:
        await self._bucket.acquire()
        try:
            response = await self._get_client().get(path, params=params)
        except httpx.TransportError as e:
            raise TransientExternalError(f"{type(e).__name__} calling {path}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientExternalError(f"HTTP {status} from {path}", status)
        if status in (401, 403):
            raise FatalExternalError(f"HTTP {status} from {path}", status)
        if status >= 400:
            raise MembershipSourceError(f"HTTP {status} from {path}", status)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedPageError(f"Non-JSON body from {path}", page) from e

    async def _get(
        self, path: str, params: dict[str, Any], operation: str, page: int = 0
    ) -> Any:
        return await call_with_retry(
            lambda: self._get_once(path, params, page),
            self._retry_config,
            operation=operation,
        )

    async def _paginate(
        self,
        path: str,
        items_key: str,
        operation: str,
        group_id: int,
        extra_params: dict[str, Any] | None = None,
    ) -> tuple[list[Any], bool, int]:
        """Collect raw entries across pages.

        Returns ``(entries, complete, skipped_pages)``. A malformed page is
        skipped; when it carried no continuation token the listing stops
        and is reported incomplete.
        """
        entries: list[Any] = []
        skipped = 0
        complete = True
        page_token: str | None = None
        page = 0
        seen_tokens: set[str] = set()

        while True:
            page += 1
            params: dict[str, Any] = {"maxPageSize": self._page_size}
            if extra_params:
                params.update(extra_params)
            if page_token:
                params["pageToken"] = page_token

            try:
                data = await self._get(path, params, operation, page)
            except MalformedPageError:
                data = None

            items = data.get(items_key, []) if isinstance(data, dict) else None
            token = data.get("nextPageToken") if isinstance(data, dict) else None
            if not isinstance(token, str) or not token:
                token = None

            if not isinstance(items, list):
                skipped += 1
                logger.warning(
                    "membership_page_malformed",
                    group_id=group_id,
                    operation=operation,
                    page=page,
                    has_next_token=token is not None,
                )
                if token is None or token in seen_tokens:
                    complete = False
                    break
                seen_tokens.add(token)
                page_token = token
                continue

            entries.extend(items)
            if token is None:
                break
            if token in seen_tokens:
                logger.warning(
                    "membership_page_token_repeated",
                    group_id=group_id,
                    operation=operation,
                    page=page,
                )
                complete = False
                break
            seen_tokens.add(token)
            page_token = token

        return entries, complete, skipped

    async def list_group_members(self, group_id: int) -> MemberListing:
        """List every member of a group with their external role id."""
        entries, complete, skipped = await self._paginate(
            f"/groups/{group_id}/memberships",
            "groupMemberships",
            "list_group_members",
            group_id,
        )
        members = [m for m in (parse_member(e) for e in entries) if m is not None]

        logger.info(
            "group_members_listed",
            group_id=group_id,
            members=len(members),
            dropped=len(entries) - len(members),
            complete=complete,
        )
        return MemberListing(members=members, complete=complete, skipped_pages=skipped)

    async def list_group_roles(self, group_id: int) -> RoleCatalogue:
        """List the group's roles ordered by rank."""
        entries, complete, skipped = await self._paginate(
            f"/groups/{group_id}/roles",
            "groupRoles",
            "list_group_roles",
            group_id,
        )
        roles = [r for r in (parse_role(e) for e in entries) if r is not None]
        roles.sort(key=lambda r: r.rank)

        logger.info(
            "group_roles_listed",
            group_id=group_id,
            roles=len(roles),
            complete=complete,
        )
        return RoleCatalogue(roles=roles, complete=complete, skipped_pages=skipped)

    async def get_user_membership(
        self, group_id: int, user_id: int
    ) -> GroupMember | None:
        """Look up one user's membership. None when the user is not in the group."""
        data = await self._get(
            f"/groups/{group_id}/memberships",
            {"maxPageSize": 1, "filter": f"user == 'users/{user_id}'"},
            "get_user_membership",
        )
        if not isinstance(data, dict):
            raise MalformedPageError("Page body is not an object", 1)
        items = data.get("groupMemberships") or []
        if not isinstance(items, list):
            raise MalformedPageError("'groupMemberships' is not a list", 1)
        for entry in items:
            member = parse_member(entry)
            if member is not None and member.user_id == user_id:
                return member
        return None
