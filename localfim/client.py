# localfim/client.py
from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Iterator

import requests

from .errors import StreamError
from .types import ModelIdentifier, PullProgress

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10
READ_TIMEOUT = 7200
LIST_TIMEOUT = 30
STOP_POLL_INTERVAL = 0.25

DEFAULT_TEMPLATE = "<PRE>{prefix} <SUF>{suffix} <MID>"


def _ndjson_records(resp, stop_event: threading.Event | None = None) -> Iterable[dict]:
    try:
        for raw in resp.iter_lines(decode_unicode=False):
            if stop_event is not None and stop_event.is_set():
                resp.close()
                break
            if not raw:
                continue
            line = raw.decode("utf-8", errors="replace")
            try:
                record = json.loads(line)
            except ValueError as exc:
                raise StreamError(f"Malformed record from backend: {line[:200]!r}") from exc
            if not isinstance(record, dict):
                raise StreamError(f"Unexpected record from backend: {line[:200]!r}")
            yield record
    except Exception:
        # Closing the response from the stop thread tears the connection down
        # under iter_lines; that is a requested stop, not a failure.
        if stop_event is not None and stop_event.is_set():
            return
        raise


def parse_model_list(data) -> list[ModelIdentifier]:
    if not isinstance(data, dict) or not isinstance(data.get("models", []), list):
        raise ValueError(f"Unexpected tags payload: {data!r}")
    models: list[ModelIdentifier] = []
    for entry in data.get("models") or []:
        if not isinstance(entry, dict):
            continue
        raw = entry.get("name") or entry.get("model")
        if not raw:
            continue
        try:
            models.append(ModelIdentifier.parse(raw))
        except ValueError:
            logger.debug("Skipping unparsable model name %r", raw)
    return models


class InferenceClient:
    """Client for the backend's tags, pull and generate endpoints."""

    def __init__(
        self,
        endpoint: str,
        model: ModelIdentifier | str,
        *,
        temperature: float = 0.1,
        top_p: float = 0.3,
        template: str = DEFAULT_TEMPLATE,
        session: requests.Session | None = None,
        read_timeout: float = READ_TIMEOUT,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model if isinstance(model, ModelIdentifier) else ModelIdentifier.parse(model)
        self.temperature = temperature
        self.top_p = top_p
        self.template = template
        self.session = session or requests.Session()
        self.read_timeout = read_timeout

    def build_prompt(self, prefix: str, suffix: str) -> str:
        return self.template.format(prefix=prefix, suffix=suffix)

    def list_models(self, timeout: float | tuple[float, float] | None = None) -> list[ModelIdentifier]:
        resp = self.session.get(
            f"{self.endpoint}/api/tags",
            timeout=timeout if timeout is not None else (CONNECT_TIMEOUT, LIST_TIMEOUT),
        )
        try:
            resp.raise_for_status()
            return parse_model_list(resp.json())
        finally:
            resp.close()

    def pull(
        self, model: ModelIdentifier, stop_event: threading.Event | None = None
    ) -> Iterator[PullProgress]:
        payload = {"model": str(model), "stream": True}
        for record in self._stream("/api/pull", payload, stop_event, READ_TIMEOUT):
            if record.get("error"):
                raise StreamError(str(record["error"]))
            yield PullProgress(
                status=str(record.get("status", "")),
                completed=int(record.get("completed") or 0),
                total=int(record.get("total") or 0),
            )

    def stream(
        self, prefix: str, suffix: str, stop_event: threading.Event | None = None
    ) -> Iterator[str]:
        payload = {
            "model": str(self.model),
            "prompt": self.build_prompt(prefix, suffix),
            "raw": True,
            "stream": True,
            "options": {"temperature": self.temperature, "top_p": self.top_p},
        }
        for record in self._stream("/api/generate", payload, stop_event, self.read_timeout):
            if record.get("error"):
                raise StreamError(str(record["error"]))
            piece = record.get("response") or ""
            if piece:
                yield piece
            if record.get("done"):
                break

    def _stream(
        self,
        path: str,
        payload: dict,
        stop_event: threading.Event | None,
        read_timeout: float,
    ) -> Iterator[dict]:
        resp = self.session.post(
            f"{self.endpoint}{path}",
            json=payload,
            stream=True,
            timeout=(CONNECT_TIMEOUT, read_timeout),
        )
        finished = threading.Event()

        def close_on_stop() -> None:
            # The stop event belongs to the caller; only observe it.
            while not finished.is_set():
                if stop_event.wait(STOP_POLL_INTERVAL):
                    resp.close()
                    return

        try:
            resp.raise_for_status()
            if stop_event is not None:
                threading.Thread(target=close_on_stop, daemon=True).start()

            yield from _ndjson_records(resp, stop_event)
        finally:
            finished.set()
            resp.close()
