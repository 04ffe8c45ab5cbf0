from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterator, List, Mapping, Optional, Protocol, Set, TypeVar

from ..logging import get_logger
from .errors import PaginationIntegrityError, ResponseShapeError

LOG = get_logger(__name__)

T = TypeVar("T", bound=Mapping[str, Any])

DEFAULT_PAGE_SIZE = 1000


class JsonGetter(Protocol):
    def get(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Any: ...


@dataclass(frozen=True)
class PageRequest:
    url: str
    offset: int
    limit: int
    filters: Mapping[str, Any] = field(default_factory=dict)

    def params(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.filters)
        out["offset"] = self.offset
        out["limit"] = self.limit
        return out


@dataclass(frozen=True)
class PageResult(Generic[T]):
    offset: int
    records: List[T]
    has_more: bool


def extract_items(body: Any, items_key: str, url: str, offset: Optional[int] = None) -> List[Any]:
    """
    Pull the record array out of a page body. Anything other than a JSON object
    with a list under items_key is a shape error, never an empty result.
    """
    if not isinstance(body, dict):
        raise ResponseShapeError(
            f"Expected a JSON object from {url}, got {type(body).__name__}", url=url, offset=offset
        )
    items = body.get(items_key)
    if not isinstance(items, list):
        raise ResponseShapeError(
            f"Response from {url} has no '{items_key}' array", url=url, offset=offset
        )
    return items


def record_identifier(record: Any, id_key: str, url: str, offset: Optional[int] = None) -> str:
    if not isinstance(record, dict):
        raise ResponseShapeError(f"Non-object record in response from {url}", url=url, offset=offset)
    value = record.get(id_key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ResponseShapeError(f"Record from {url} is missing identifier '{id_key}'", url=url, offset=offset)
    return str(value)


class _SeenIdentifiers:
    def __init__(self, id_key: str, url: str) -> None:
        self.id_key = id_key
        self.url = url
        self._seen: Set[str] = set()

    def check(self, records: List[Any], offset: int) -> None:
        # Validate the whole page before any of it is handed to the caller.
        for record in records:
            ident = record_identifier(record, self.id_key, self.url, offset)
            if ident in self._seen:
                LOG.error(
                    "Duplicate identifier across pages; aborting fetch",
                    extra={"url": self.url, "offset": offset, "identifier": ident, "id_key": self.id_key},
                )
                raise PaginationIntegrityError(
                    f"Duplicate {self.id_key} '{ident}' at offset {offset} from {self.url}; "
                    "the offset/limit cursor is not stable",
                    identifier=ident,
                    url=self.url,
                    offset=offset,
                )
            self._seen.add(ident)


class OffsetPaginator(Generic[T]):
    """
    Drives offset/limit pagination over one vault collection.

    Pages are requested strictly in increasing offset order. Pagination ends on
    an empty page or on a page shorter than page_size. An identifier seen twice
    within the sequence raises PaginationIntegrityError instead of looping or
    deduplicating. Iterating yields records lazily; the sequence is not
    restartable.
    """

    def __init__(
        self,
        requester: JsonGetter,
        url: str,
        *,
        id_key: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        filters: Optional[Mapping[str, Any]] = None,
        items_key: str = "value",
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.requester = requester
        self.url = url
        self.id_key = id_key
        self.page_size = page_size
        self.filters = dict(filters or {})
        self.items_key = items_key
        self.pages_fetched = 0
        self.records_yielded = 0
        self._started = False

    def iter_pages(self) -> Iterator[PageResult[T]]:
        if self._started:
            raise RuntimeError("OffsetPaginator sequences are not restartable")
        self._started = True

        seen = _SeenIdentifiers(self.id_key, self.url)
        offset = 0
        while True:
            request = PageRequest(self.url, offset, self.page_size, self.filters)
            body = self.requester.get(request.url, params=request.params())
            records = extract_items(body, self.items_key, self.url, offset)
            self.pages_fetched += 1
            LOG.debug(
                "Fetched page",
                extra={"url": self.url, "offset": offset, "count": len(records)},
            )
            if not records:
                break
            seen.check(records, offset)
            has_more = len(records) >= self.page_size
            self.records_yielded += len(records)
            yield PageResult(offset=offset, records=records, has_more=has_more)
            if not has_more:
                break
            offset += self.page_size

        LOG.info(
            "Pagination complete",
            extra={"url": self.url, "pages": self.pages_fetched, "records": self.records_yielded},
        )

    def __iter__(self) -> Iterator[T]:
        for page in self.iter_pages():
            yield from page.records


def fetch_single(
    requester: JsonGetter,
    url: str,
    *,
    id_key: str,
    items_key: str = "value",
    params: Optional[Mapping[str, Any]] = None,
    fallback_items_key: Optional[str] = None,
) -> PageResult[Any]:
    """
    One-shot listing for endpoints the client does not paginate. The same shape
    and duplicate-identifier rules apply as for a paginated sequence.
    """
    body = requester.get(url, params=params)
    key = items_key
    if fallback_items_key and isinstance(body, dict) and items_key not in body and fallback_items_key in body:
        key = fallback_items_key
    records = extract_items(body, key, url)
    _SeenIdentifiers(id_key, url).check(records, 0)
    return PageResult(offset=0, records=records, has_more=False)
