from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from ..http.transport import api_url
from ..logging import get_logger
from ..normalize.schema import (
    ACCOUNT_ID_KEY,
    SAFE_ID_KEY,
    USER_ID_KEY,
    AccountRecord,
    SafeRecord,
    UserRecord,
)
from ..util.pagination import DEFAULT_PAGE_SIZE, JsonGetter, OffsetPaginator, PageResult, fetch_single

LOG = get_logger(__name__)

SAFES_PATH = "/API/Safes/"
ACCOUNTS_PATH = "/API/Accounts/"
USERS_PATH = "/API/Users"

# Upstream cap on a single cross-safe account listing.
ACCOUNTS_LISTING_CAP = 20_000


def safe_filter(safe_name: str) -> str:
    return f"safeName eq {safe_name}"


def safes_paginator(requester: JsonGetter, base_url: str, page_size: int = DEFAULT_PAGE_SIZE) -> OffsetPaginator:
    return OffsetPaginator(
        requester,
        api_url(base_url, SAFES_PATH),
        id_key=SAFE_ID_KEY,
        page_size=page_size,
    )


def accounts_paginator(
    requester: JsonGetter,
    base_url: str,
    page_size: int = DEFAULT_PAGE_SIZE,
    *,
    search: Optional[str] = None,
    safe_name: Optional[str] = None,
) -> OffsetPaginator:
    filters: Dict[str, Any] = {}
    if search:
        filters["search"] = search
    if safe_name:
        filters["filter"] = safe_filter(safe_name)
    return OffsetPaginator(
        requester,
        api_url(base_url, ACCOUNTS_PATH),
        id_key=ACCOUNT_ID_KEY,
        page_size=page_size,
        filters=filters,
    )


def iter_safe_pages(
    requester: JsonGetter, base_url: str, page_size: int = DEFAULT_PAGE_SIZE
) -> Iterator[PageResult[SafeRecord]]:
    yield from safes_paginator(requester, base_url, page_size).iter_pages()


def iter_account_pages(
    requester: JsonGetter,
    base_url: str,
    page_size: int = DEFAULT_PAGE_SIZE,
    *,
    search: Optional[str] = None,
    safe_name: Optional[str] = None,
) -> Iterator[PageResult[AccountRecord]]:
    paginator = accounts_paginator(requester, base_url, page_size, search=search, safe_name=safe_name)
    for page in paginator.iter_pages():
        yield page
    if safe_name is None and paginator.records_yielded >= ACCOUNTS_LISTING_CAP:
        LOG.warning(
            "Account listing reached the upstream cross-safe cap; results may be truncated. "
            "Use --accounts-per-safe to list accounts one safe at a time.",
            extra={"records": paginator.records_yielded, "cap": ACCOUNTS_LISTING_CAP},
        )


def list_safe_names(requester: JsonGetter, base_url: str, page_size: int = DEFAULT_PAGE_SIZE) -> List[str]:
    names: List[str] = []
    for page in iter_safe_pages(requester, base_url, page_size):
        names.extend(str(rec[SAFE_ID_KEY]) for rec in page.records)
    return names


def iter_account_pages_per_safe(
    requester: JsonGetter,
    base_url: str,
    page_size: int = DEFAULT_PAGE_SIZE,
    *,
    search: Optional[str] = None,
) -> Iterator[PageResult[AccountRecord]]:
    """
    List accounts one safe at a time. Each safe is its own pagination sequence,
    so the duplicate check and the upstream cap both apply per safe.
    """
    safe_names = list_safe_names(requester, base_url, page_size)
    LOG.info("Listing accounts per safe", extra={"safes": len(safe_names)})
    for name in safe_names:
        yield from iter_account_pages(requester, base_url, page_size, search=search, safe_name=name)


def fetch_users_page(requester: JsonGetter, base_url: str) -> PageResult[UserRecord]:
    """Single-shot user listing with extended details (groups, authorizations)."""
    return fetch_single(
        requester,
        api_url(base_url, USERS_PATH),
        id_key=USER_ID_KEY,
        items_key="Users",
        fallback_items_key="value",
        params={"ExtendedDetails": "true"},
    )
