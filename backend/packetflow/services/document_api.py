import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from packetflow.config import settings
from packetflow.models.schemas import (
    Classification,
    DocumentPayload,
    ExtractionResult,
    JobState,
    JobStatus,
    SplitResult,
    SplitSegment,
)
from packetflow.services.cancellation import CancellationToken, cancellable_sleep, maybe_await, run_cancellable
from packetflow.services.errors import (
    JobPollingTimeoutError,
    JobTerminalError,
    StreamTimeoutError,
    TransientError,
    ValidationError,
    error_from_response,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, JobStatus], Any]

EXTRACT_ENDPOINT = "/v1/documents/extract"


def _parse_json_text(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value


def normalize_extraction(payload: Dict[str, Any]) -> ExtractionResult:
    """
    Collapse the response shapes the extract endpoint produces into one result.

    Handles the completion style (`choices[0].message.parsed`), the flat
    style (`data` / `result`), and either wrapped in `{"content": ...}`.
    """
    if not isinstance(payload, dict):
        raise TransientError("Extraction response was not a JSON object")

    content = payload.get("content") if isinstance(payload.get("content"), dict) else payload

    message: Dict[str, Any] = {}
    choices = content.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}

    data = (
        content.get("data")
        or message.get("parsed")
        or _parse_json_text(message.get("content"))
        or content.get("result")
        or {}
    )
    data = _parse_json_text(data)
    if not isinstance(data, dict):
        data = {}

    likelihoods = content.get("likelihoods") or message.get("likelihoods") or payload.get("likelihoods") or {}
    if not isinstance(likelihoods, dict):
        likelihoods = {}

    usage = content.get("usage") or payload.get("usage") or {}
    page_count = usage.get("page_count") if isinstance(usage, dict) else None

    return ExtractionResult(
        fields=data,
        likelihoods=likelihoods,
        requires_human_review=bool(content.get("requires_human_review")),
        page_count=page_count if isinstance(page_count, int) else None,
    )


def normalize_split(payload: Dict[str, Any]) -> SplitResult:
    """Keep only segments with pages. `page_count` comes from usage, else the page union."""
    segments: List[SplitSegment] = []
    for raw in payload.get("splits") or []:
        if not isinstance(raw, dict):
            continue
        pages = [p for p in (raw.get("pages") or []) if isinstance(p, int)]
        if not pages:
            continue
        segments.append(SplitSegment(split_type=raw.get("name") or raw.get("split_type") or "other", pages=pages))

    usage = payload.get("usage") or {}
    page_count = usage.get("page_count") if isinstance(usage, dict) else None
    if not page_count:
        page_count = len({p for s in segments for p in s.pages}) or None
    return SplitResult(segments=segments, page_count=page_count)


def normalize_classification(payload: Dict[str, Any]) -> Classification:
    result = payload.get("result") if isinstance(payload.get("result"), dict) else payload
    category = result.get("classification") or result.get("category") or result.get("name")
    if isinstance(category, dict):
        category = category.get("name")
    if not category:
        raise TransientError("Classification response did not include a category")

    confidence = result.get("confidence", result.get("likelihood"))
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        confidence = min(max(float(confidence), 0.0), 1.0)
    else:
        confidence = None

    return Classification(
        category=str(category),
        confidence=confidence,
        reasoning=result.get("reasoning"),
        source="api",
    )


def job_progress(status: JobStatus, attempt: int, max_attempts: int) -> int:
    """Map a job status onto a 0-100 progress value."""
    if status == JobStatus.validating:
        return 10
    if status == JobStatus.queued:
        return 20
    if status in (JobStatus.processing, JobStatus.in_progress):
        fraction = min(attempt, max_attempts) / max_attempts if max_attempts else 1.0
        return min(80, 40 + int(40 * fraction))
    return 100


class DocumentAPIClient:
    """
    Client for the remote document AI API (split, classify, extract, parse, jobs).

    One instance per API key. The key is sent as the `Api-Key` header and is
    never written to logs.
    """

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 stream_inactivity_timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_key:
            raise ValidationError("API key not configured", http_status=401)
        self._api_key = api_key
        self.base_url = (base_url or settings.document_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.document_api_timeout
        self.stream_inactivity_timeout = (
            stream_inactivity_timeout if stream_inactivity_timeout is not None
            else settings.stream_inactivity_timeout
        )
        self.poll_interval = settings.job_poll_interval
        self.poll_max_attempts = settings.job_poll_max_attempts
        self._transport = transport

    def __repr__(self) -> str:
        return f"DocumentAPIClient(base_url={self.base_url!r})"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Api-Key": self._api_key}

    def _client(self, timeout: Optional[httpx.Timeout] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                       token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        return await run_cancellable(self._send(method, path, body), token)

    async def _send(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        start_time = time.time()
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=body, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning(f"Document API {method} {path} timed out")
            raise TransientError(f"Request to {path} timed out")
        except httpx.TransportError as e:
            logger.warning(f"Document API {method} {path} network error: {e}")
            raise TransientError(f"Network error calling {path}: {e}")

        latency_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Document API {method} {path}: status_code={response.status_code}, latency_ms={latency_ms}")

        if response.status_code >= 400:
            error = error_from_response(response.status_code, response.text, response.headers.get("Retry-After"))
            logger.error(f"Document API {path} error {response.status_code}: {error}")
            raise error

        try:
            return response.json()
        except ValueError:
            raise TransientError(f"Invalid JSON response from {path}", http_status=response.status_code)

    async def split(self, document: DocumentPayload, subdocuments: List[Dict[str, str]],
                    model: str, image_dpi: int = 192, context: Optional[str] = None,
                    token: Optional[CancellationToken] = None) -> SplitResult:
        body: Dict[str, Any] = {
            "document": document.model_dump(),
            "subdocuments": subdocuments,
            "model": model,
            "image_resolution_dpi": image_dpi,
        }
        if context:
            body["context"] = context
        payload = await self._request("POST", "/documents/split", body, token)
        return normalize_split(payload)

    async def classify(self, document: DocumentPayload, categories: List[Dict[str, str]], model: str,
                       first_n_pages: Optional[int] = None, context: Optional[str] = None,
                       token: Optional[CancellationToken] = None) -> Classification:
        body: Dict[str, Any] = {
            "document": document.model_dump(),
            "categories": categories,
            "model": model,
        }
        if first_n_pages:
            body["first_n_pages"] = first_n_pages
        if context:
            body["context"] = context
        payload = await self._request("POST", "/documents/classify", body, token)
        return normalize_classification(payload)

    def build_extract_body(self, document: DocumentPayload, json_schema: Dict[str, Any], model: str,
                           temperature: float = 0.0, n_consensus: int = 1, image_dpi: int = 192,
                           chunking_keys: Optional[List[str]] = None, stream: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "document": document.model_dump(),
            "json_schema": json_schema,
            "model": model,
            "temperature": temperature,
            "image_resolution_dpi": image_dpi,
            "stream": stream,
        }
        if n_consensus > 1:
            body["n_consensus"] = n_consensus
        if chunking_keys:
            body["chunking_keys"] = chunking_keys
        return body

    async def extract(self, document: DocumentPayload, json_schema: Dict[str, Any], model: str,
                      temperature: float = 0.0, n_consensus: int = 1, image_dpi: int = 192,
                      chunking_keys: Optional[List[str]] = None, stream: bool = False,
                      token: Optional[CancellationToken] = None) -> ExtractionResult:
        body = self.build_extract_body(document, json_schema, model, temperature, n_consensus,
                                       image_dpi, chunking_keys, stream)
        if stream:
            payload = await self._stream_extract(body, token)
        else:
            payload = await self._request("POST", "/documents/extract", body, token)
        return normalize_extraction(payload)

    async def _stream_extract(self, body: Dict[str, Any], token: Optional[CancellationToken]) -> Dict[str, Any]:
        if token is not None:
            token.raise_if_cancelled()
        # Read timeout is governed by the inactivity window below
        timeout = httpx.Timeout(self.timeout, read=None)
        try:
            async with self._client(timeout) as client:
                async with client.stream("POST", "/documents/extract", json=body,
                                         headers=self._headers()) as response:
                    if response.status_code >= 400:
                        text = (await response.aread()).decode("utf-8", errors="replace")
                        raise error_from_response(response.status_code, text, response.headers.get("Retry-After"))
                    return await self._read_event_stream(response.aiter_lines(), token)
        except httpx.TimeoutException:
            raise TransientError("Streaming extraction request timed out")
        except httpx.TransportError as e:
            raise TransientError(f"Network error during streaming extraction: {e}")

    async def _read_event_stream(self, lines: AsyncIterator[str],
                                 token: Optional[CancellationToken]) -> Dict[str, Any]:
        """
        Accumulate `data:` frames and return the last JSON object received.

        Raises StreamTimeoutError when no `data:` line arrives within the
        inactivity window; comment keep-alives do not extend it. `[DONE]`
        markers and unparseable frames are skipped.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stream_inactivity_timeout
        last: Optional[Dict[str, Any]] = None
        frames = 0
        while True:
            try:
                line = await run_cancellable(
                    asyncio.wait_for(_next_line(lines), timeout=max(0.0, deadline - loop.time())),
                    token,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Extraction stream idle for {self.stream_inactivity_timeout}s after {frames} frames")
                raise StreamTimeoutError(
                    f"Stream timeout: no data received for {self.stream_inactivity_timeout:g} seconds"
                )
            if line is None:
                break

            line = line.strip()
            if not line.startswith("data:"):
                continue
            deadline = loop.time() + self.stream_inactivity_timeout
            data = line[len("data:"):].strip()
            if not data or data == "[DONE]":
                continue
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Skipping unparseable stream frame ({len(data)} chars)")
                continue
            if isinstance(parsed, dict):
                last = parsed
                frames += 1

        if last is None:
            raise TransientError("No data received from streaming extraction")
        return last

    async def parse(self, document: DocumentPayload, model: str, table_parsing_format: str = "html",
                    token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        body = {
            "document": document.model_dump(),
            "model": model,
            "table_parsing_format": table_parsing_format,
        }
        return await self._request("POST", "/documents/parse", body, token)

    async def generate_schema(self, document: DocumentPayload, model: str,
                              instructions: Optional[str] = None,
                              token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "documents": [document.model_dump()],
            "model": model,
            "temperature": 0,
        }
        if instructions:
            body["instructions"] = instructions
        return await self._request("POST", "/schemas/generate", body, token)

    async def create_job(self, endpoint: str, request: Dict[str, Any],
                         metadata: Optional[Dict[str, str]] = None,
                         token: Optional[CancellationToken] = None) -> str:
        body: Dict[str, Any] = {"endpoint": endpoint, "request": request}
        if metadata:
            body["metadata"] = metadata
        payload = await self._request("POST", "/jobs", body, token)
        job_id = payload.get("id") or payload.get("job_id")
        if not job_id:
            raise TransientError("Job creation response did not include an id")
        logger.info(f"Created job {job_id} for {endpoint}")
        return str(job_id)

    async def get_job_status(self, job_id: str, token: Optional[CancellationToken] = None) -> JobState:
        payload = await self._request("GET", f"/jobs/{job_id}", None, token)
        raw_status = payload.get("status", "processing")
        try:
            status = JobStatus(raw_status)
        except ValueError:
            logger.warning(f"Job {job_id} reported unknown status '{raw_status}', treating as processing")
            status = JobStatus.processing

        error = payload.get("error")
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        return JobState(id=job_id, status=status, response=payload.get("response"), error=error)

    async def poll_job(self, job_id: str, on_progress: Optional[ProgressCallback] = None,
                       interval: Optional[float] = None, max_attempts: Optional[int] = None,
                       token: Optional[CancellationToken] = None) -> Dict[str, Any]:
        """Poll a job until it completes and return its response payload."""
        interval = self.poll_interval if interval is None else interval
        max_attempts = self.poll_max_attempts if max_attempts is None else max_attempts

        for attempt in range(1, max_attempts + 1):
            state = await self.get_job_status(job_id, token)
            if on_progress is not None:
                await maybe_await(on_progress(job_progress(state.status, attempt, max_attempts), state.status))

            if state.status == JobStatus.completed:
                if state.response is None:
                    raise TransientError(f"Job {job_id} completed without a response")
                return state.response
            if state.status in (JobStatus.failed, JobStatus.cancelled, JobStatus.expired):
                message = state.error or "Unknown error"
                raise JobTerminalError(f"Job {state.status.value}: {message}", status=state.status.value)

            if attempt < max_attempts:
                await cancellable_sleep(interval, token)

        raise JobPollingTimeoutError(f"Job {job_id} polling timed out after {max_attempts} attempts")

    async def extract_via_job(self, document: DocumentPayload, json_schema: Dict[str, Any], model: str,
                              temperature: float = 0.0, n_consensus: int = 1, image_dpi: int = 192,
                              chunking_keys: Optional[List[str]] = None,
                              on_progress: Optional[ProgressCallback] = None,
                              token: Optional[CancellationToken] = None) -> ExtractionResult:
        body = self.build_extract_body(document, json_schema, model, temperature, n_consensus,
                                       image_dpi, chunking_keys, stream=False)
        job_id = await self.create_job(EXTRACT_ENDPOINT, body, token=token)
        response = await self.poll_job(job_id, on_progress=on_progress, token=token)
        body_payload = response.get("body") if isinstance(response.get("body"), dict) else response
        return normalize_extraction(body_payload)


async def _next_line(lines: AsyncIterator[str]) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


ClientFactory = Callable[[str], DocumentAPIClient]


def default_client_factory(api_key: str) -> DocumentAPIClient:
    return DocumentAPIClient(api_key)
