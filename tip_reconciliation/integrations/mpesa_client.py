"""
M-Pesa Daraja API client with retry logic and error classification.

Implements:
- OAuth client-credentials token caching
- STK push (Lipa Na M-Pesa Online) initiation and status query
- B2C payout initiation
- Exponential backoff for idempotent status queries
- Circuit breaker pattern
"""
import asyncio
import base64
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tip_reconciliation.config import Settings, get_settings
from tip_reconciliation.core.domain import TransactionKind
from tip_reconciliation.core.errors import ValidationError
from tip_reconciliation.core.gateway import (
    GatewayError,
    GatewayRejected,
    GatewayUnknown,
    GatewayUnreachable,
    PayoutAck,
    PushAck,
    StatusResult,
)
from tip_reconciliation.integrations.phone import normalize_phone_number
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"
B2C_PAYMENT_PATH = "/mpesa/b2c/v1/paymentrequest"

# Daraja answers an STK query for an unfinished push with HTTP 500 and this code
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

TOKEN_REFRESH_MARGIN_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 3599


def stk_timestamp(now: Optional[datetime] = None) -> str:
    """Daraja timestamp, YYYYMMDDHHMMSS."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y%m%d%H%M%S")


def stk_password(short_code: str, passkey: str, timestamp: str) -> str:
    """base64(short_code + passkey + timestamp)."""
    raw = f"{short_code}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _log_query_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "stk_query_retrying",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


class CircuitBreaker:
    """
    Circuit breaker for Daraja API calls.

    Prevents cascading failures by temporarily stopping requests when the
    provider keeps failing at the transport level. Rejections (4xx) prove the
    provider is reachable and count as successes.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            GatewayUnreachable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayUnreachable("Circuit breaker is open")

        try:
            result = await func()
        except GatewayUnreachable:
            self.on_failure()
            raise
        except GatewayRejected:
            self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
            self._set_state("open")

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class MpesaGateway:
    """
    Daraja implementation of the provider gateway.

    Features:
    - Cached OAuth token, refreshed five minutes before expiry
    - Bounded timeout on every call
    - Circuit breaker shared across operations
    - Retries only for status queries, which are read-only
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=self.settings.gateway_timeout_seconds,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.settings.gateway_circuit_failure_threshold,
            timeout=self.settings.gateway_circuit_reset_seconds,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(
            "mpesa_gateway_initialized",
            environment=self.settings.mpesa_environment,
            short_code=self.settings.mpesa_business_short_code,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "MpesaGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Transport

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await self.http_client.request(
                method,
                path,
                timeout=self.settings.gateway_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, "timeout", time.perf_counter() - started)
            raise GatewayUnreachable(f"{operation} timed out", original_error=e) from e
        except httpx.TransportError as e:
            metrics.record_gateway_call(operation, "transport_error", time.perf_counter() - started)
            raise GatewayUnreachable(f"{operation} transport error: {e}", original_error=e) from e
        except httpx.HTTPError as e:
            # Decoding and redirect failures
            metrics.record_gateway_call(operation, "request_error", time.perf_counter() - started)
            raise GatewayUnreachable(f"{operation} request error: {e}", original_error=e) from e

        metrics.record_gateway_call(
            operation, str(response.status_code), time.perf_counter() - started
        )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def _classify(
        self, operation: str, response: httpx.Response, body: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Map a Daraja HTTP answer to a body or a classified GatewayError.

        Raises:
            GatewayUnreachable: 5xx
            GatewayRejected: 4xx
            GatewayUnknown: 2xx with an unparseable body
        """
        status = response.status_code
        error_code = (body or {}).get("errorCode")
        message = (body or {}).get("errorMessage") or response.reason_phrase

        if status >= 500:
            error: GatewayError = GatewayUnreachable(
                f"{operation} failed with HTTP {status}: {message}",
                status_code=status,
                result_code=error_code,
                response_body=body,
            )
        elif status >= 400:
            error = GatewayRejected(
                f"{operation} rejected with HTTP {status}: {message}",
                status_code=status,
                result_code=error_code,
                response_body=body,
            )
        elif body is None:
            error = GatewayUnknown(
                f"{operation} returned an unparseable body", status_code=status
            )
        else:
            return body

        metrics.record_gateway_error(error.error_type.value)
        logger.error(
            "mpesa_api_error",
            operation=operation,
            error_type=error.error_type.value,
            status_code=status,
            error_code=error_code,
            error_message=str(message),
        )
        raise error

    def _require_accepted(self, operation: str, body: Dict[str, Any]) -> None:
        """Synchronous acceptance: ResponseCode must be "0"."""
        response_code = str(body.get("ResponseCode", ""))
        if response_code != "0":
            metrics.record_gateway_error("rejected")
            logger.error(
                "mpesa_request_rejected",
                operation=operation,
                response_code=response_code,
                response_description=body.get("ResponseDescription"),
            )
            raise GatewayRejected(
                f"{operation} rejected: {body.get('ResponseDescription') or 'Unknown error'}",
                result_code=response_code or None,
                response_body=body,
            )

    # OAuth

    async def _get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            response = await self._send(
                "token",
                "GET",
                OAUTH_PATH,
                params={"grant_type": "client_credentials"},
                auth=(self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret),
            )
            body = self._classify("token", response, self._json(response))
            token = body.get("access_token")
            if not token:
                raise GatewayUnknown("OAuth response carried no access_token", response_body=body)

            try:
                ttl = int(body.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
            except (TypeError, ValueError):
                ttl = DEFAULT_TOKEN_TTL_SECONDS

            self._access_token = token
            self._token_expires_at = time.monotonic() + max(ttl - TOKEN_REFRESH_MARGIN_SECONDS, 0)
            logger.info("mpesa_access_token_refreshed", expires_in=ttl)
            return token

    async def _post(self, operation: str, path: str, payload: Dict[str, Any]) -> httpx.Response:
        token = await self._get_access_token()
        return await self._send(
            operation,
            "POST",
            path,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

    # Operations

    async def initiate_push(
        self, amount: int, phone: str, account_reference: str, description: str
    ) -> PushAck:
        """
        Send an STK push prompt to the customer's phone.

        Args:
            amount: Amount in whole shillings
            phone: Customer phone number in any accepted format
            account_reference: Reference shown to the customer
            description: Transaction description

        Returns:
            PushAck: CheckoutRequestID and MerchantRequestID

        Raises:
            ValidationError: Invalid amount or phone number
            GatewayError: Provider unreachable, rejected, or unparseable
        """
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        msisdn = normalize_phone_number(phone)
        timestamp = stk_timestamp()
        short_code = self.settings.mpesa_business_short_code
        payload = {
            "BusinessShortCode": short_code,
            "Password": stk_password(short_code, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": msisdn,
            "PartyB": short_code,
            "PhoneNumber": msisdn,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13] or "Tip",
        }

        logger.info("initiating_stk_push", amount=amount, account_reference=account_reference)

        async def _push() -> Dict[str, Any]:
            response = await self._post("push", STK_PUSH_PATH, payload)
            return self._classify("push", response, self._json(response))

        body = await self.circuit_breaker.call(_push)
        self._require_accepted("push", body)

        checkout_request_id = body.get("CheckoutRequestID")
        if not checkout_request_id:
            raise GatewayUnknown("STK push accepted without CheckoutRequestID", response_body=body)

        ack = PushAck(
            correlation_id=str(checkout_request_id),
            merchant_request_id=str(body.get("MerchantRequestID", "")),
            acceptance_message=str(body.get("CustomerMessage") or body.get("ResponseDescription", "")),
        )
        logger.info(
            "stk_push_accepted",
            checkout_request_id=ack.correlation_id,
            merchant_request_id=ack.merchant_request_id,
        )
        return ack

    async def initiate_bulk_payout(
        self, amount: int, counterparty_account: str, remarks: str, occasion: str = ""
    ) -> PayoutAck:
        """
        Send a B2C business payment to a staff member.

        Raises:
            ValidationError: Invalid amount or phone number
            GatewayError: Provider unreachable, rejected, or unparseable
        """
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        msisdn = normalize_phone_number(counterparty_account)
        payload = {
            "InitiatorName": self.settings.mpesa_b2c_initiator_name,
            "SecurityCredential": self.settings.mpesa_b2c_security_credential,
            "CommandID": self.settings.mpesa_b2c_command_id,
            "Amount": amount,
            "PartyA": self.settings.b2c_short_code,
            "PartyB": msisdn,
            "Remarks": (remarks or "Tip payout")[:100],
            "QueueTimeOutURL": self.settings.mpesa_b2c_timeout_url,
            "ResultURL": self.settings.mpesa_b2c_result_url,
            "Occasion": (occasion or remarks or "")[:100],
        }

        logger.info("initiating_b2c_payout", amount=amount)

        async def _payout() -> Dict[str, Any]:
            response = await self._post("payout", B2C_PAYMENT_PATH, payload)
            return self._classify("payout", response, self._json(response))

        body = await self.circuit_breaker.call(_payout)
        self._require_accepted("payout", body)

        conversation_id = body.get("ConversationID")
        if not conversation_id:
            raise GatewayUnknown("B2C request accepted without ConversationID", response_body=body)

        ack = PayoutAck(
            correlation_id=str(conversation_id),
            originator_conversation_id=str(body.get("OriginatorConversationID", "")),
            acceptance_message=str(body.get("ResponseDescription", "")),
        )
        logger.info(
            "b2c_payout_accepted",
            conversation_id=ack.correlation_id,
            originator_conversation_id=ack.originator_conversation_id,
        )
        return ack

    async def query_status(
        self, correlation_id: str, kind: TransactionKind = TransactionKind.TIP_PAYMENT
    ) -> StatusResult:
        """
        Ask the provider for the outcome of an earlier request.

        Read-only, so transport failures are retried with exponential
        backoff. B2C outcomes are only ever delivered by callback, so payouts
        report pending without a network call.

        Raises:
            GatewayError: After retries are exhausted, or on rejection
        """
        if kind == TransactionKind.PAYOUT:
            logger.debug("payout_status_callback_only", conversation_id=correlation_id)
            return StatusResult(pending=True, result_description="Awaiting B2C result callback")

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnreachable),
            stop=stop_after_attempt(self.settings.gateway_query_max_attempts),
            wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=8),
            before_sleep=_log_query_retry,
            reraise=True,
        )
        return await retrying(self._query_with_breaker, correlation_id)

    async def _query_with_breaker(self, checkout_request_id: str) -> StatusResult:
        return await self.circuit_breaker.call(lambda: self._query_once(checkout_request_id))

    async def _query_once(self, checkout_request_id: str) -> StatusResult:
        timestamp = stk_timestamp()
        short_code = self.settings.mpesa_business_short_code
        payload = {
            "BusinessShortCode": short_code,
            "Password": stk_password(short_code, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        response = await self._post("query", STK_QUERY_PATH, payload)
        body = self._json(response)

        if body is not None and str(body.get("errorCode", "")) == STILL_PROCESSING_ERROR_CODE:
            logger.info("stk_query_still_processing", checkout_request_id=checkout_request_id)
            return StatusResult(
                pending=True,
                result_description=str(body.get("errorMessage", "The transaction is being processed")),
            )

        body = self._classify("query", response, body)
        if body.get("ResultCode") in (None, ""):
            return StatusResult(
                pending=True, result_description=str(body.get("ResponseDescription", ""))
            )

        try:
            result_code = int(body["ResultCode"])
        except (TypeError, ValueError):
            raise GatewayUnknown(
                f"Unparseable ResultCode {body['ResultCode']!r}", response_body=body
            ) from None

        logger.info(
            "stk_query_resolved",
            checkout_request_id=checkout_request_id,
            result_code=result_code,
        )
        return StatusResult(
            pending=False,
            result_code=result_code,
            result_description=str(body.get("ResultDesc", "")),
        )
