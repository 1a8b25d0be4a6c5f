############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# client.py: Retrying HTTP client for a ComfyUI-style backend
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""HTTP client for one generation backend.

Backend API endpoints used:
- POST /prompt - Submit a workflow, returns prompt_id
- GET /queue - Running and pending prompts
- GET /history/{prompt_id} - Outcome of a finished prompt
- GET /system_stats - Liveness probe
- GET /object_info - Node definitions (models, LoRAs, samplers)
- POST /queue, POST /interrupt - Remove or stop a prompt
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

import httpx

from backend.app.core.backends.models import (
    BackendCapabilities,
    HistoryEntry,
    QueueSnapshot,
)
from backend.app.core.errors import (
    BackendClientError,
    BackendResponseError,
    BackendTimeoutError,
    SubmissionError,
)
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

# Loader nodes are searched in order; the first one exposing the input wins
LORA_NODES = (
    "LoraLoader",
    "LoRALoader",
    "LoraLoaderModelOnly",
    "Load LoRA",
    "LoRA Loader",
    "Power Lora Loader (rgthree)",
    "LoRA Stack",
    "LoraLoaderStack",
)
SAMPLER_NODES = (
    "KSampler",
    "KSamplerAdvanced",
    "SamplerCustom",
    "KSamplerSelect",
    "Sampler",
)


class ComfyUIClient:
    """
    Client for one backend's REST API.

    Every call except ping() runs under the same retry policy: timeouts,
    transport failures and 5xx answers are retried with a linearly growing
    delay, 4xx answers are raised immediately.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        max_retries: int = 2,
        backoff: float = 1.0,
        ping_timeout: float = 2.0,
        client_id: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.backoff = backoff
        self.ping_timeout = ping_timeout
        self.client_id = client_id or f"genrouter-{uuid.uuid4().hex[:12]}"
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        retry: bool = True,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Send one logical request, retrying transient failures."""
        client = await self._get_client()
        total_attempts = self.max_retries + 1 if retry else 1
        last_error: Optional[BackendClientError] = None

        for attempt in range(1, total_attempts + 1):
            try:
                response = await client.request(
                    method,
                    path,
                    json=json,
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except httpx.TimeoutException as e:
                last_error = BackendTimeoutError(
                    f"{method} {path} timed out", base_url=self.base_url
                )
                last_error.__cause__ = e
            except httpx.TransportError as e:
                last_error = BackendClientError(
                    f"{method} {path} failed: {e}", base_url=self.base_url
                )
                last_error.__cause__ = e
            else:
                if response.status_code < 400:
                    return response

                error = BackendResponseError(
                    f"{method} {path} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    base_url=self.base_url,
                )
                if not error.is_retryable:
                    raise error
                last_error = error

            if attempt < total_attempts:
                delay = attempt * self.backoff
                logger.debug(
                    "backend_request_retry",
                    url=self.base_url,
                    path=path,
                    attempt=attempt,
                    delay=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    async def _call(
        self,
        method: str,
        path: str,
        *,
        deadline: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Run _request within the caller's deadline (a time.monotonic() value)."""
        if deadline is None:
            return await self._request(method, path, **kwargs)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise BackendTimeoutError(
                f"{method} {path}: deadline exceeded", base_url=self.base_url
            )
        try:
            async with asyncio.timeout(remaining):
                return await self._request(method, path, **kwargs)
        except TimeoutError as e:
            raise BackendTimeoutError(
                f"{method} {path}: deadline exceeded", base_url=self.base_url
            ) from e

    async def _get_json(self, path: str, deadline: Optional[float] = None) -> Any:
        response = await self._call("GET", path, deadline=deadline)
        try:
            return response.json()
        except ValueError as e:
            raise BackendClientError(
                f"GET {path} returned invalid JSON", base_url=self.base_url
            ) from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Cheap liveness probe: one attempt, short timeout, never raises."""
        try:
            response = await self._request(
                "GET", "/system_stats", retry=False, timeout=self.ping_timeout
            )
            return response.status_code == 200
        except Exception as e:
            logger.debug("backend_ping_failed", url=self.base_url, error=str(e))
            return False

    async def submit_job(
        self,
        payload: Any,
        deadline: Optional[float] = None,
    ) -> str:
        """
        Submit a generation payload.

        Args:
            payload: Workflow passed through to the backend untouched
            deadline: Optional time.monotonic() deadline for all attempts

        Returns:
            The prompt ID assigned by the backend

        Raises:
            SubmissionError: rejected by the backend or unreachable after retries
        """
        body = {"prompt": payload, "client_id": self.client_id}
        try:
            response = await self._call("POST", "/prompt", json=body, deadline=deadline)
            data = response.json()
        except BackendClientError as e:
            raise SubmissionError(
                f"Submit to {self.base_url} failed: {e}", base_url=self.base_url
            ) from e
        except ValueError as e:
            raise SubmissionError(
                f"Submit to {self.base_url} returned invalid JSON", base_url=self.base_url
            ) from e

        if not isinstance(data, dict):
            raise SubmissionError("Unexpected submit response", base_url=self.base_url)

        if data.get("node_errors"):
            raise SubmissionError(
                f"Backend reported node errors: {data['node_errors']}",
                base_url=self.base_url,
            )

        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise SubmissionError(
                "Backend response missing prompt_id", base_url=self.base_url
            )

        logger.info("prompt_submitted", url=self.base_url, prompt_id=prompt_id)
        return str(prompt_id)

    async def query_queue(self, deadline: Optional[float] = None) -> QueueSnapshot:
        """Get the backend's running and pending prompts."""
        data = await self._get_json("/queue", deadline=deadline)
        if not isinstance(data, dict):
            data = {}

        exec_info = data.get("exec_info") or {}
        remaining = exec_info.get("queue_remaining")

        return QueueSnapshot(
            running=self._prompt_ids(data.get("queue_running")),
            pending=self._prompt_ids(data.get("queue_pending")),
            queue_remaining=int(remaining) if remaining is not None else None,
        )

    async def query_queue_depth(self, deadline: Optional[float] = None) -> int:
        """Number of prompts the backend still has to run."""
        snapshot = await self.query_queue(deadline=deadline)
        return snapshot.depth

    async def get_history(
        self,
        prompt_id: str,
        deadline: Optional[float] = None,
    ) -> Optional[HistoryEntry]:
        """
        Look up a prompt in the backend history.

        Returns:
            HistoryEntry, or None if the backend has no record of it yet
        """
        data = await self._get_json(f"/history/{prompt_id}", deadline=deadline)
        if not isinstance(data, dict):
            return None
        entry = data.get(prompt_id)
        if not isinstance(entry, dict):
            return None
        return self._parse_history_entry(prompt_id, entry)

    async def list_capabilities(
        self,
        deadline: Optional[float] = None,
    ) -> BackendCapabilities:
        """Discover models, LoRAs and samplers from /object_info."""
        object_info = await self._get_json("/object_info", deadline=deadline)
        if not isinstance(object_info, dict):
            object_info = {}

        caps = BackendCapabilities(
            diffusion_models=self._node_options(object_info, ("UNETLoader",), "unet_name"),
            text_encoders=self._node_options(object_info, ("CLIPLoader",), "clip_name"),
            vaes=self._node_options(object_info, ("VAELoader",), "vae_name"),
            upscale_models=self._node_options(
                object_info, ("UpscaleModelLoader",), "model_name"
            ),
            clip_visions=self._node_options(object_info, ("CLIPVisionLoader",), "clip_name"),
            loras=sorted(self._node_options(object_info, LORA_NODES, "lora_name")),
            samplers=sorted(self._node_options(object_info, SAMPLER_NODES, "sampler_name")),
        )

        logger.debug(
            "backend_capabilities_discovered",
            url=self.base_url,
            models=len(caps.diffusion_models),
            loras=len(caps.loras),
            samplers=len(caps.samplers),
        )
        return caps

    async def cancel_prompt(
        self,
        prompt_id: str,
        deadline: Optional[float] = None,
    ) -> bool:
        """
        Remove a pending prompt or interrupt it if it is running.

        Returns:
            True if the backend still had the prompt
        """
        snapshot = await self.query_queue(deadline=deadline)

        if prompt_id in snapshot.pending:
            await self._call(
                "POST", "/queue", json={"delete": [prompt_id]}, deadline=deadline
            )
            logger.info("backend_prompt_deleted", url=self.base_url, prompt_id=prompt_id)
            return True

        if prompt_id in snapshot.running:
            await self._call(
                "POST", "/interrupt", json={"prompt_id": prompt_id}, deadline=deadline
            )
            logger.info("backend_prompt_interrupted", url=self.base_url, prompt_id=prompt_id)
            return True

        return False

    # ------------------------------------------------------------------
    # Parsing helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _prompt_ids(items: Optional[Sequence[Any]]) -> List[str]:
        """Extract prompt IDs from queue items shaped [number, prompt_id, ...]."""
        ids = []
        for item in items or []:
            if isinstance(item, (list, tuple)) and len(item) > 1:
                ids.append(str(item[1]))
        return ids

    @staticmethod
    def _node_options(
        object_info: Dict[str, Any],
        node_names: Sequence[str],
        input_name: str,
    ) -> List[str]:
        """Return the combo options of the first node that declares input_name.

        Handles both the legacy [[options...], {...}] shape and the newer
        ["COMBO", {"options": [...]}] shape.
        """
        for node_name in node_names:
            node = object_info.get(node_name)
            if not isinstance(node, dict):
                continue
            required = (node.get("input") or {}).get("required") or {}
            input_def = required.get(input_name)
            if not input_def:
                continue

            first = input_def[0]
            if isinstance(first, list):
                return [str(v) for v in first]
            if first == "COMBO" and len(input_def) > 1 and isinstance(input_def[1], dict):
                return [str(v) for v in input_def[1].get("options", [])]
            return [str(v) for v in input_def if isinstance(v, str)]
        return []

    @staticmethod
    def _parse_history_entry(prompt_id: str, entry: Dict[str, Any]) -> HistoryEntry:
        status = entry.get("status") or {}
        outputs = entry.get("outputs") or {}
        status_str = status.get("status_str")

        error = None
        if status_str == "error":
            error = "Backend execution error"
            for message in status.get("messages") or []:
                if (
                    isinstance(message, (list, tuple))
                    and len(message) > 1
                    and message[0] == "execution_error"
                    and isinstance(message[1], dict)
                ):
                    details = message[1]
                    node = details.get("node_id")
                    text = details.get("exception_message") or "execution failed"
                    error = f"Node {node} error: {text}" if node else text
                    break

        if error is None and isinstance(outputs, dict):
            for node_id, node_output in outputs.items():
                if isinstance(node_output, dict):
                    node_error = node_output.get("error") or node_output.get("exception")
                    if node_error:
                        error = f"Node {node_id} error: {node_error}"
                        break

        return HistoryEntry(
            prompt_id=prompt_id,
            has_outputs=bool(outputs),
            status=status_str,
            completed=bool(status.get("completed")),
            error=error,
        )
