from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ledgerapi.config import Settings
from ledgerapi.core.exceptions import ExternalFailureCause, ExternalServiceFailure
from ledgerapi.schemas.credential import CredentialHandle

logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY", "BLOCKLIST", "SPII"}


class GenerativeAIClient:
    """외부 생성형 AI 서비스 클라이언트

    모든 오류는 ExternalServiceFailure(cause)로 분류해 전달합니다.
    - 429 -> quota_exceeded
    - 안전 필터 차단 -> safety_rejected
    - 5xx / 네트워크 오류 -> transient
    - 타임아웃 -> timeout
    - 그 외 -> unknown
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = settings.AI_API_BASE_URL.rstrip("/")
        self._timeout = httpx.Timeout(
            settings.GENERATION_TIMEOUT_SECONDS, connect=settings.AI_CONNECT_TIMEOUT_SECONDS
        )
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        effective = (
            httpx.Timeout(timeout, connect=self._timeout.connect)
            if timeout is not None
            else self._timeout
        )
        return httpx.AsyncClient(
            base_url=self._base_url, timeout=effective, transport=self._transport
        )

    async def generate(
        self,
        credential: CredentialHandle,
        model: str,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """generateContent 호출 - 성공 시 응답 JSON 반환"""
        try:
            async with self._client(timeout) as client:
                response = await client.post(
                    f"/models/{model}:generateContent",
                    params={"key": credential.secret},
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise ExternalServiceFailure(
                ExternalFailureCause.TIMEOUT, "AI service request timed out"
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(f"AI service request error (credential {credential.masked}): {exc}")
            raise ExternalServiceFailure(
                ExternalFailureCause.TRANSIENT, "AI service is temporarily unavailable"
            ) from exc

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalServiceFailure(
                ExternalFailureCause.UNKNOWN, "AI service returned an invalid response"
            ) from exc

        self._raise_for_safety(data)
        return data

    async def ping(self, credential: CredentialHandle) -> bool:
        """자격증명 유효성 확인 (모델 목록 조회 1회)"""
        try:
            async with self._client(self._timeout.connect) as client:
                response = await client.get(
                    "/models", params={"key": credential.secret, "pageSize": 1}
                )
        except httpx.TimeoutException as exc:
            raise ExternalServiceFailure(
                ExternalFailureCause.TIMEOUT, "AI service ping timed out"
            ) from exc
        except httpx.RequestError as exc:
            raise ExternalServiceFailure(
                ExternalFailureCause.TRANSIENT, "AI service is temporarily unavailable"
            ) from exc

        self._raise_for_status(response)
        return True

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        message = GenerativeAIClient._error_message(response)
        if status == 429:
            raise ExternalServiceFailure(
                ExternalFailureCause.QUOTA_EXCEEDED, "AI service quota exceeded",
                details={"status_code": status},
            )
        if status >= 500:
            raise ExternalServiceFailure(
                ExternalFailureCause.TRANSIENT, "AI service is temporarily unavailable",
                details={"status_code": status},
            )
        if "safety" in message.lower():
            raise ExternalServiceFailure(
                ExternalFailureCause.SAFETY_REJECTED, "Request rejected by safety filters",
                details={"status_code": status},
            )
        raise ExternalServiceFailure(
            ExternalFailureCause.UNKNOWN, "AI service request failed",
            details={"status_code": status, "reason": message[:200]},
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or ""
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return str(error.get("message", ""))
        return ""

    @staticmethod
    def _raise_for_safety(data: Dict[str, Any]) -> None:
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise ExternalServiceFailure(
                ExternalFailureCause.SAFETY_REJECTED,
                "Request rejected by safety filters",
                details={"block_reason": feedback["blockReason"]},
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ExternalServiceFailure(
                ExternalFailureCause.UNKNOWN, "AI service returned no candidates"
            )

        finish_reason = candidates[0].get("finishReason")
        if finish_reason in SAFETY_FINISH_REASONS:
            raise ExternalServiceFailure(
                ExternalFailureCause.SAFETY_REJECTED,
                "Output rejected by safety filters",
                details={"finish_reason": finish_reason},
            )

    @staticmethod
    def extract_image(data: Dict[str, Any]) -> Tuple[str, str]:
        """응답에서 첫 번째 이미지(base64, mime type) 추출"""
        for candidate in data.get("candidates") or []:
            parts = (candidate.get("content") or {}).get("parts") or []
            for part in parts:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    return inline["data"], inline.get("mimeType", "image/png")

        raise ExternalServiceFailure(
            ExternalFailureCause.UNKNOWN, "AI service returned no image"
        )


def build_generation_payload(request) -> Dict[str, Any]:
    """생성 요청을 generateContent 페이로드로 변환"""
    prompt = request.prompt
    if request.negative_prompt:
        prompt = f"{prompt} --no {request.negative_prompt}"

    config: Dict[str, Any] = {"responseModalities": ["IMAGE"]}
    if request.seed is not None:
        config["seed"] = request.seed

    image_config: Dict[str, Any] = {}
    if request.aspect_ratio in ("1:1", "3:4", "4:3", "9:16", "16:9"):
        image_config["aspectRatio"] = request.aspect_ratio
    if request.image_size != "1K":
        image_config["imageSize"] = request.image_size
    if image_config:
        config["imageConfig"] = image_config

    return {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": config,
    }
