"""Gemini adapter — translates a GenerationRequest into a generateContent call.

Every failure leaves this module as a typed gateway error:
  - HTTP 429, status RESOURCE_EXHAUSTED, or a quota message -> QuotaExceededError
  - timeout, transport error, other 4xx/5xx                 -> RemoteServiceError
  - finishReason SAFETY / promptFeedback.blockReason         -> RemoteServiceError
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

import httpx

from kurikulum_ai.gateway.errors import QuotaExceededError, RemoteServiceError, is_quota_error
from kurikulum_ai.gateway.types import Credential, GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

# Educational content trips the default filters on harmless topics
SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "BLOCK_NONE"},
]


class GeminiClient:
    """Google Gemini generateContent adapter with typed failures."""

    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def __init__(self, timeout: float = 120.0):
        self.timeout = timeout

    def build_payload(self, request: GenerationRequest) -> dict:
        generation_config: dict = {"maxOutputTokens": request.max_output_tokens}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.top_p is not None:
            generation_config["topP"] = request.top_p
        if request.top_k is not None:
            generation_config["topK"] = request.top_k
        if request.json_mode:
            generation_config["responseMimeType"] = "application/json"

        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": request.prompt}],
                }
            ],
            "generationConfig": generation_config,
            "safetySettings": SAFETY_SETTINGS,
        }

    async def generate(self, request: GenerationRequest, credential: Credential) -> GenerationResponse:
        """Send one prompt with one credential. Raises a GenerationError subclass on failure."""
        model = request.model.removeprefix("models/")
        url = self.api_url_template.format(model=model)
        payload = self.build_payload(request)
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    url,
                    json=payload,
                    params={"key": credential.secret},
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise RemoteServiceError(f"Gemini timeout after {self.timeout}s", error_code="TIMEOUT") from e
        except httpx.HTTPError as e:
            raise RemoteServiceError(f"Gemini transport error: {e.__class__.__name__}", error_code="TRANSPORT") from e

        latency_ms = int((time.monotonic() - start) * 1000)

        if resp.status_code >= 400:
            self._raise_for_error(resp, model, credential)

        data = resp.json()
        response = GenerationResponse(model_version=data.get("modelVersion", model), key_id=credential.key_id)
        response.latency_ms = latency_ms

        candidates = data.get("candidates", [])
        if not candidates:
            block_reason = data.get("promptFeedback", {}).get("blockReason", "")
            if block_reason:
                raise RemoteServiceError(
                    f"[CENSORED_BY_VENDOR] Prompt blocked: {block_reason}",
                    status_code=resp.status_code,
                    error_code=f"BLOCKED_{block_reason}",
                )
            raise RemoteServiceError("Gemini returned no candidates", status_code=resp.status_code, error_code="EMPTY")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason", "")
        if finish_reason == "SAFETY":
            raise RemoteServiceError(
                "[CENSORED_BY_VENDOR] Gemini safety filter triggered",
                status_code=resp.status_code,
                error_code="SAFETY",
            )

        parts = candidate.get("content", {}).get("parts", [])
        response.text = "".join(p.get("text", "") for p in parts if "text" in p)
        response.finish_reason = finish_reason

        usage = data.get("usageMetadata", {})
        response.input_tokens = usage.get("promptTokenCount", 0)
        response.output_tokens = usage.get("candidatesTokenCount", 0)
        response.total_tokens = usage.get("totalTokenCount", 0) or response.input_tokens + response.output_tokens
        response.completed_at = datetime.now(timezone.utc)

        logger.debug(
            "Gemini %s answered in %dms (%d tokens, key %s)",
            model,
            latency_ms,
            response.total_tokens,
            credential.key_id,
            extra={"key_id": credential.key_id},
        )
        return response

    @staticmethod
    def _raise_for_error(resp: httpx.Response, model: str, credential: Credential) -> None:
        status = ""
        message = ""
        try:
            error = resp.json().get("error", {})
            status = error.get("status", "")
            message = error.get("message", "")
        except ValueError:
            message = resp.text[:300]

        if resp.status_code == 429 or status == "RESOURCE_EXHAUSTED" or is_quota_error(Exception(message)):
            raise QuotaExceededError(
                f"Gemini quota exceeded for {model}: {message or 'rate limited by Google AI'}",
                status_code=resp.status_code,
                error_code=status or str(resp.status_code),
                key_id=credential.key_id,
            )

        raise RemoteServiceError(
            f"Gemini error {resp.status_code} for {model}: {message or 'no details'}",
            status_code=resp.status_code,
            error_code=status or str(resp.status_code),
        )
