"""Insert a streamed completion into a live document as it arrives.

The inserter keeps at most one pending :class:`Suggestion`. Fragments are
applied in arrival order at the end of the text inserted so far, and the
cursor is put back on the anchor after every fragment. Cancelling or failing
mid-stream keeps the partial text as a pending suggestion; only ``discard``
removes it.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import requests

from .document import Document
from .errors import LocalFIMError, RequestTimeoutError
from .stream_utils import EOS_MARKER, ColumnUnits, FragmentCleaner, span_end
from .types import InserterState, Position, Range, Suggestion, SuggestionState

logger = logging.getLogger(__name__)

StreamFactory = Callable[[str, str, threading.Event], Iterable[str]]


@dataclass
class GenerationRequest:
    prefix: str
    suffix: str
    anchor: Position
    stop_event: threading.Event = field(default_factory=threading.Event)


class StreamingInserter:
    def __init__(
        self,
        *,
        eos_marker: str = EOS_MARKER,
        units: ColumnUnits = "utf-16",
        on_state: Callable[[InserterState], None] | None = None,
    ) -> None:
        self.eos_marker = eos_marker
        self.units = units
        self.on_state = on_state
        self.state = InserterState.IDLE
        self.outcome: InserterState | None = None
        self.suggestion: Suggestion | None = None
        self.document: Document | None = None
        self.error: Exception | None = None
        self._request: GenerationRequest | None = None
        self._cleaner = FragmentCleaner(eos_marker)
        self._abort = threading.Event()
        self._deadline: float | None = None

    @property
    def pending(self) -> bool:
        return self.suggestion is not None and self.suggestion.pending

    def _set_state(self, state: InserterState) -> None:
        if state is self.state:
            return
        logger.debug("Inserter %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    # ----- generation -----

    def begin(self, document: Document, timeout: float | None = None) -> GenerationRequest:
        if self.pending:
            self.discard()

        anchor = document.cursor()
        request = GenerationRequest(
            prefix=document.text_before(anchor),
            suffix=document.text_after(anchor),
            anchor=anchor,
        )
        self.document = document
        self.suggestion = Suggestion(anchor)
        self.error = None
        self.outcome = None
        self._request = request
        self._cleaner = FragmentCleaner(self.eos_marker)
        self._abort = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._set_state(InserterState.GENERATING)
        return request

    def feed(self, piece: str) -> bool:
        """Apply one fragment; return ``False`` once consumption should stop."""
        if self.state is not InserterState.GENERATING:
            return False
        if self._abort.is_set():
            self._stop(InserterState.CANCELLED)
            return False
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._stop(InserterState.CANCELLED, RequestTimeoutError("Generation timed out"))
            return False
        self._apply(self._cleaner.feed(piece))
        return True

    def end(self, error: Exception | None = None) -> None:
        """Mark the stream finished; partial text stays in the document."""
        if self.state is not InserterState.GENERATING:
            return
        if isinstance(error, RequestTimeoutError) or self._abort.is_set():
            self._stop(InserterState.CANCELLED, error)
        else:
            self._stop(InserterState.COMPLETED, error)

    def abort(self) -> None:
        if self.state is not InserterState.GENERATING:
            return
        self._abort.set()
        if self._request is not None:
            self._request.stop_event.set()

    def run(
        self, document: Document, stream: StreamFactory, timeout: float | None = None
    ) -> InserterState:
        """Generate synchronously, feeding every fragment ``stream`` yields."""
        request = self.begin(document, timeout)
        iterator = iter(stream(request.prefix, request.suffix, request.stop_event))
        try:
            for piece in iterator:
                if not self.feed(piece):
                    break
        except requests.Timeout as exc:
            self.end(RequestTimeoutError(str(exc)))
        except (requests.RequestException, LocalFIMError) as exc:
            logger.warning("Completion stream failed: %s", exc)
            self.end(exc)
        else:
            self.end()
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        return self.state

    def _apply(self, text: str) -> None:
        if not text or self.suggestion is None or self.document is None:
            return
        suggestion = self.suggestion
        self.document.insert(suggestion.span.end, text)
        suggestion.text += text
        suggestion.span = Range(
            suggestion.anchor, span_end(suggestion.anchor, suggestion.text, self.units)
        )
        self.document.set_pending(suggestion.span)
        self.document.set_cursor(suggestion.anchor)

    def _stop(self, state: InserterState, error: Exception | None = None) -> None:
        self._apply(self._cleaner.flush())
        if self._request is not None:
            self._request.stop_event.set()
        if error is not None:
            self.error = error
        self._set_state(state)

    # ----- review -----

    def accept(self) -> Suggestion | None:
        if self.state not in (InserterState.COMPLETED, InserterState.CANCELLED):
            return None
        suggestion = self.suggestion
        if self.document is not None:
            self.document.set_pending(None)
            self.document.set_cursor(suggestion.span.end)
        suggestion.state = SuggestionState.ACCEPTED
        self._finish(InserterState.ACCEPTED)
        return suggestion

    def discard(self) -> Suggestion | None:
        if self.state not in (
            InserterState.GENERATING,
            InserterState.COMPLETED,
            InserterState.CANCELLED,
        ):
            return None
        if self.state is InserterState.GENERATING:
            self._abort.set()
            if self._request is not None:
                self._request.stop_event.set()
        suggestion = self.suggestion
        if self.document is not None:
            if not suggestion.span.is_empty:
                self.document.delete(suggestion.span)
            self.document.set_pending(None)
            self.document.set_cursor(suggestion.anchor)
        suggestion.state = SuggestionState.DISCARDED
        self._finish(InserterState.DISCARDED)
        return suggestion

    def _finish(self, outcome: InserterState) -> None:
        self.outcome = outcome
        self.suggestion = None
        self.document = None
        self._request = None
        self._set_state(outcome)
        self._set_state(InserterState.IDLE)
