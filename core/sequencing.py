"""
core/sequencing.py -- Request sequencing for list views.

A list view fires a new list() call on every filter change or keystroke in the
search box. Responses can arrive out of order; without sequencing, an older,
slower response overwrites a newer one. ListController numbers every load,
cancels the superseded in-flight call, and drops any result whose number is
no longer the latest.

Usage:
    controller = ListController(store.incidents)
    page = await controller.load(SearchRequest(query="phish"))
    # page is None when a newer load() superseded this one

Layer rule: core/ is the kernel. This module may not import from api/ or store/.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

from core.models import Page, SearchRequest

logger = logging.getLogger("grcadmin.sequencing")


class PageSource(Protocol):
    async def list(self, request: SearchRequest) -> Page: ...


class ListController:
    """Page-local view state for one list view.

    Attributes:
        loading: True while the latest request is outstanding.
        page:    Result of the latest completed request.
        error:   Exception from the latest failed request, cleared on the next load.
        request: The latest request issued.
    """

    def __init__(self, source: PageSource, cancel_superseded: bool = True) -> None:
        self.source = source
        self.cancel_superseded = cancel_superseded
        self.loading = False
        self.page: Optional[Page] = None
        self.error: Optional[BaseException] = None
        self.request: Optional[SearchRequest] = None
        self._seq = 0
        self._inflight: Optional[asyncio.Task] = None

    @property
    def sequence(self) -> int:
        return self._seq

    def _is_latest(self, seq: int) -> bool:
        return seq == self._seq

    async def load(self, request: SearchRequest) -> Optional[Page]:
        """Run source.list(request); return its page, or None if superseded.

        Raises whatever the source raised when this is still the latest request.
        """
        self._seq += 1
        seq = self._seq
        self.request = request
        previous = self._inflight
        if self.cancel_superseded and previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(self.source.list(request))
        self._inflight = task
        self.loading = True
        self.error = None
        try:
            result = await task
        except asyncio.CancelledError:
            if not self._is_latest(seq):
                logger.debug("List request #%d cancelled (superseded by #%d)", seq, self._seq)
                return None
            raise
        except Exception as exc:
            if not self._is_latest(seq):
                logger.debug("Discarding error from stale list request #%d: %s", seq, exc)
                return None
            self.error = exc
            raise
        finally:
            if self._is_latest(seq):
                self.loading = False
                self._inflight = None

        if not self._is_latest(seq):
            logger.debug("Discarding stale list response #%d (latest is #%d)", seq, self._seq)
            return None
        self.page = result
        return result

    def cancel(self) -> None:
        """Cancel the in-flight request (e.g. the view is being closed)."""
        self._seq += 1
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        self.loading = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "loading": self.loading,
            "sequence": self._seq,
            "page": self.page.to_dict() if self.page is not None else None,
            "error": str(self.error) if self.error is not None else None,
        }
