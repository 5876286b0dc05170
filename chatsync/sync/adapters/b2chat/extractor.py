"""
B2Chat export extractor.

Walks the offset-paginated ``/export`` endpoints and yields one page at a
time so callers can persist each page before the next request goes out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, List, Mapping

from chatsync.sync.registry import EntityDescriptor

from .client import B2ChatClient

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class B2ChatPage:
    """A page of records returned by the extractor."""

    entity_type: str
    page: int
    offset: int
    records: List[Mapping[str, Any]]
    exported: int
    total: int | None
    has_next: bool


class B2ChatExtractor:
    """Stream export pages for an entity type."""

    def __init__(
        self,
        *,
        client: B2ChatClient,
        page_size: int = DEFAULT_PAGE_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.page_size = max(1, int(page_size))
        self.logger = logger or logging.getLogger(__name__)
        # Set once a page walk stops at max_pages while the API still had data.
        self.truncated = False

    @property
    def api_call_count(self) -> int:
        return self.client.api_call_count

    def extract_pages(
        self,
        descriptor: EntityDescriptor,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        max_pages: int | None = None,
        start_offset: int = 0,
    ) -> Iterator[B2ChatPage]:
        """
        Yield pages until the API reports no further data.

        Stops on an empty page, when ``has_next`` is false, or after
        ``max_pages`` pages (``None`` means unlimited), starting at
        ``start_offset``. Stopping at the page limit sets ``truncated`` once the
        generator is exhausted.
        """

        self.truncated = False
        page_number = 0
        while max_pages is None or page_number < max_pages:
            offset = start_offset + page_number * self.page_size
            result = self.client.export_page(
                descriptor.export_path,
                descriptor.items_key,
                offset=offset,
                limit=self.page_size,
                range_params=descriptor.range_params,
                date_from=date_from,
                date_to=date_to,
            )
            if not result.items:
                self.logger.debug(
                    "B2Chat export returned an empty page",
                    extra={"sync_entity": descriptor.name, "b2chat_offset": offset},
                )
                break
            page_number += 1
            yield B2ChatPage(
                entity_type=descriptor.name,
                page=page_number,
                offset=offset,
                records=list(result.items),
                exported=result.exported,
                total=result.total,
                has_next=result.has_next,
            )
            if not result.has_next:
                break
        else:
            self.truncated = True
            self.logger.info(
                "B2Chat extraction stopped at page limit",
                extra={"sync_entity": descriptor.name, "b2chat_max_pages": max_pages},
            )
