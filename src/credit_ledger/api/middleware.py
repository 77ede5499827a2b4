"""
FastAPI/Starlette middleware that gates AI endpoints on credits and charges
the usage they report.

Flow:
  1. Before request: refuse a model tier the user's subscription does not
     include (403), an empty balance (402), and a balance below the cost of
     the estimated input tokens for the requested model tier (402).
  2. Request is executed.
  3. After response: read the ``usage`` object from the JSON body, price it
     and charge it. The response body is only released once the charge
     succeeded; a denied or failed charge replaces it with an error.

Replays are keyed on the user, the ``X-Request-Id`` header and a hash of
the reported usage, so resending one request is charged once while a
reused request id with different usage is charged again.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..exceptions import CreditLedgerError, StoreUnavailableError, TransactionConflictError
from ..models.usage import ChargeResult, DenialReason, UsageRequest
from ..services.credit_service import CreditService

logger = logging.getLogger(__name__)


def _get_nested(data: dict, key_path: str) -> Optional[Any]:
    """Get a value using dot-notation key path, e.g. 'result.usage'."""
    keys = key_path.strip().split(".")
    current: Any = data
    for k in keys:
        if not isinstance(current, dict) or k not in current:
            return None
        current = current[k]
    return current


def usage_operation_key(user_id: str, request_id: str, usage: UsageRequest) -> str:
    """Ledger operation id for one request's usage; identical replays map to the same id."""
    canonical = json.dumps(usage.model_dump(mode="json"), sort_keys=True, ensure_ascii=True)
    digest = hashlib.sha256(f"{user_id}\n{request_id}\n{canonical}".encode()).hexdigest()
    return f"usage-{digest[:40]}"


def _insufficient(detail: str = "Insufficient credits for this request.") -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={"detail": detail, "code": "INSUFFICIENT_CREDITS"},
    )


def _model_not_allowed(model_tier: str, tier: str) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={
            "detail": f"Model tier {model_tier} is not included in {tier}.",
            "code": "MODEL_NOT_ALLOWED",
        },
    )


class CreditChargeMiddleware(BaseHTTPMiddleware):
    """
    Middleware that checks entitlement before the request and charges the
    usage reported in the response body after the API runs.

    - Responses without a usage object, or with an error status, are not
      charged and pass through unchanged.
    - When the usage cannot be charged (insufficient credits, a model tier
      outside the subscription, unreadable usage or a ledger failure) the
      response body is withheld and an error is returned instead.
    """

    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        *,
        path_prefix: str = "/api",
        user_id_header: str = "X-User-Id",
        tier_header: str = "X-Subscription-Tier",
        model_tier_header: str = "X-Model-Tier",
        request_id_header: str = "X-Request-Id",
        estimated_tokens_header: str = "X-Estimated-Tokens",
        default_estimated_tokens: int = 0,
        response_usage_key: str = "usage",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.tier_header = tier_header
        self.model_tier_header = model_tier_header
        self.request_id_header = request_id_header
        self.estimated_tokens_header = estimated_tokens_header
        self.default_estimated_tokens = default_estimated_tokens
        self.response_usage_key = response_usage_key
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _estimated_tokens(self, request: Request) -> int:
        raw = request.headers.get(self.estimated_tokens_header)
        if raw is None:
            return self.default_estimated_tokens
        try:
            return max(0, int(raw))
        except ValueError:
            return self.default_estimated_tokens

    def _denied(self, result: ChargeResult, tier: str) -> JSONResponse:
        if result.reason is DenialReason.MODEL_NOT_ALLOWED:
            return _model_not_allowed(result.breakdown.model_tier, tier)
        return _insufficient(
            f"Usage of {result.needed} credits exceeds the available balance of {result.new_total}."
        )

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing user identification (e.g. X-User-Id header)."},
            )
        model_tier = request.headers.get(self.model_tier_header)
        request_id = request.headers.get(self.request_id_header)

        try:
            tier = await self.credit_service.resolve_user_tier(
                user_id, request.headers.get(self.tier_header)
            )
            if model_tier and not self.credit_service.can_use_model(tier, model_tier):
                return _model_not_allowed(model_tier, tier.value)
            balance = await self.credit_service.get_balance(user_id, tier)
            estimated = 0
            estimated_tokens = self._estimated_tokens(request)
            if model_tier and estimated_tokens:
                estimated = self.credit_service.estimate_cost(
                    UsageRequest(model_tier=model_tier, input_tokens=estimated_tokens)
                )
        except CreditLedgerError as exc:
            return JSONResponse(status_code=400, content={"detail": str(exc)})

        if balance.total <= 0 or balance.total < estimated:
            return _insufficient()

        response = await call_next(request)

        body_bytes: Optional[bytes] = getattr(response, "body", None)
        if body_bytes is None and hasattr(response, "body_iterator"):
            body_bytes = b"".join([chunk async for chunk in response.body_iterator])

        charged: Optional[int] = None
        if body_bytes and response.status_code < 400:
            try:
                data = json.loads(body_bytes)
            except json.JSONDecodeError:
                data = None
            raw = _get_nested(data, self.response_usage_key) if isinstance(data, dict) else None
            if raw is not None:
                log_extra = {"path": request.url.path, "user_id": user_id}
                try:
                    if isinstance(raw, dict) and model_tier and "model_tier" not in raw:
                        raw = {**raw, "model_tier": model_tier}
                    usage = UsageRequest.model_validate(raw)
                    operation_key = (
                        usage_operation_key(user_id, request_id, usage) if request_id else None
                    )
                    result = await self.credit_service.charge_usage(
                        user_id, usage, tier=tier, idempotency_key=operation_key
                    )
                except ValidationError as e:
                    logger.error(
                        "Credit middleware: could not read usage from response: %s",
                        e,
                        extra=log_extra,
                    )
                    return JSONResponse(
                        status_code=500,
                        content={"detail": "Usage could not be metered.", "code": "CHARGE_FAILED"},
                    )
                except CreditLedgerError as e:
                    logger.error(
                        "Credit middleware: charging usage failed: %s", e, extra=log_extra
                    )
                    status_code = (
                        503
                        if isinstance(e, (StoreUnavailableError, TransactionConflictError))
                        else 500
                    )
                    return JSONResponse(
                        status_code=status_code,
                        content={"detail": "Usage could not be charged.", "code": "CHARGE_FAILED"},
                    )
                if not result.sufficient:
                    logger.warning(
                        "Credit middleware: withholding response, usage was not charged (%s)",
                        result.reason.value if result.reason else "unknown",
                        extra=log_extra,
                    )
                    return self._denied(result, tier.value)
                # A replay was charged by the request it repeats
                charged = 0 if result.duplicate else result.deducted

        if body_bytes is None:
            return response
        headers = dict(response.headers)
        headers.pop("content-length", None)
        if charged is not None:
            headers["X-Credits-Charged"] = str(charged)
        return Response(
            content=body_bytes,
            status_code=response.status_code,
            headers=headers,
            media_type=getattr(response, "media_type", "application/json"),
        )
