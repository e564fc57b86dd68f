"""
Cardcom API client with retry logic and comprehensive error handling.

Implements:
- LowProfile (hosted payment page) creation and result lookup
- Token charges for renewals
- Token validation
- Exponential backoff for transient errors
- Circuit breaker pattern
"""
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings, get_settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

LOW_PROFILE_CREATE_PATH = "/api/v11/LowProfile/Create"
LOW_PROFILE_RESULT_PATH = "/api/v11/LowProfile/GetLpResult"
CHARGE_TOKEN_PATH = "/Interface/ChargeToken.aspx"
VALIDATE_TOKEN_PATH = "/Interface/GetMuhlafimTokens.aspx"

ISO_COIN_IDS = {"ILS": 1, "USD": 2}


class CardcomErrorType(Enum):
    """Classification of Cardcom errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class CardcomOperation(str, Enum):
    """LowProfile operations."""

    CHARGE_ONLY = "ChargeOnly"
    CREATE_TOKEN_ONLY = "CreateTokenOnly"
    CHARGE_AND_CREATE_TOKEN = "ChargeAndCreateToken"


class CardcomError(Exception):
    """Base exception for Cardcom-related errors."""

    def __init__(
        self,
        message: str,
        error_type: CardcomErrorType,
        response_code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Cardcom error.

        Args:
            message: Error message
            error_type: Classification of error
            response_code: Gateway ResponseCode, when the gateway answered
            original_error: Underlying transport exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.response_code = response_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != CardcomErrorType.PERMANENT


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, CardcomError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Cardcom API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Permanent gateway errors
    (declines, validation failures) do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
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

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            CardcomError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise CardcomError(
                    "Circuit breaker is open",
                    CardcomErrorType.TRANSIENT,
                )

        try:
            result = await func(*args, **kwargs)
        except CardcomError as e:
            if e.retryable:
                self.on_failure()
            else:
                self.on_success()
            raise
        except Exception:
            self.on_failure()
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
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class CardcomClient:
    """
    Async wrapper for the Cardcom API.

    Features:
    - Automatic retry with exponential backoff
    - Circuit breaker pattern
    - Error classification (HTTP status and gateway ResponseCode)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Cardcom client.

        Args:
            settings: Optional settings (defaults to environment settings)
            http_client: Optional preconfigured httpx client
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.cardcom_base_url,
            timeout=self.settings.cardcom_timeout_seconds,
        )
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "cardcom_client_initialized",
            base_url=self.settings.cardcom_base_url,
            terminal=self.settings.cardcom_terminal_number,
        )

    @staticmethod
    def _classify_status(status_code: int) -> CardcomErrorType:
        """
        Classify an HTTP error status for retry logic.

        Args:
            status_code: HTTP status returned by Cardcom

        Returns:
            CardcomErrorType: Error classification
        """
        if status_code == 429:
            return CardcomErrorType.RATE_LIMIT
        elif status_code >= 500:
            return CardcomErrorType.TRANSIENT
        else:
            return CardcomErrorType.PERMANENT

    def _raise_error(self, operation: str, error: CardcomError) -> None:
        metrics.record_cardcom_api_error(error.error_type.value)
        logger.error(
            "cardcom_api_error",
            operation=operation,
            error_type=error.error_type.value,
            response_code=error.response_code,
            error_message=str(error),
        )
        raise error

    async def _send(
        self, operation: str, path: str, json_body: Optional[Dict[str, Any]] = None,
        form_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        start_time = time.time()
        try:
            if json_body is not None:
                response = await self.http_client.post(path, json=json_body)
            else:
                response = await self.http_client.post(path, data=form_body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.record_cardcom_api_call(operation, "error", time.time() - start_time)
            self._raise_error(
                operation,
                CardcomError(
                    f"Cardcom returned HTTP {e.response.status_code}",
                    self._classify_status(e.response.status_code),
                    original_error=e,
                ),
            )
            raise  # For type checker
        except (httpx.TimeoutException, httpx.TransportError) as e:
            metrics.record_cardcom_api_call(operation, "error", time.time() - start_time)
            self._raise_error(
                operation,
                CardcomError(
                    f"Cardcom unreachable: {str(e)}",
                    CardcomErrorType.TRANSIENT,
                    original_error=e,
                ),
            )
            raise  # For type checker

        metrics.record_cardcom_api_call(operation, "ok", time.time() - start_time)
        return response

    async def _request(
        self, operation: str, path: str, json_body: Optional[Dict[str, Any]] = None,
        form_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.cardcom_retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.cardcom_retry_base_delay,
                max=16 * max(self.settings.cardcom_retry_base_delay, 0),
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self.circuit_breaker.call(
                    self._send, operation, path, json_body=json_body, form_body=form_body
                )
        return response

    def _credentials(self) -> Dict[str, Any]:
        return {
            "TerminalNumber": int(self.settings.cardcom_terminal_number),
            "ApiName": self.settings.cardcom_api_name,
        }

    def build_low_profile_payload(
        self,
        operation: CardcomOperation,
        amount_cents: int,
        return_value: str,
        product_name: str,
        currency: str = "ILS",
        j_validate_type: int = 5,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
        max_payments: int = 1,
    ) -> Dict[str, Any]:
        """
        Build a LowProfile Create request.

        The invoice document is only attached to charging operations;
        its product sum always equals the charged Amount.
        """
        amount = round(amount_cents / 100, 2)
        frontend = self.settings.frontend_url.rstrip("/")
        payload: Dict[str, Any] = {
            **self._credentials(),
            "Operation": operation.value,
            "ReturnValue": return_value,
            "Amount": amount,
            "WebHookUrl": self.settings.webhook_url,
            "SuccessRedirectUrl": f"{frontend}/subscription/success",
            "FailedRedirectUrl": f"{frontend}/subscription/failed",
            "ProductName": product_name,
            "Language": "he",
            "ISOCoinId": ISO_COIN_IDS.get(currency.upper(), 1),
            "MaxNumOfPayments": max_payments,
            "UIDefinition": {
                "IsHideCardOwnerName": False,
                "IsHideCardOwnerEmail": False,
                "IsHideCardOwnerPhone": False,
                "CardOwnerNameValue": customer_name or "",
                "CardOwnerEmailValue": customer_email or "",
                "CardOwnerPhoneValue": customer_phone or "",
            },
            "AdvancedDefinition": {"JValidateType": j_validate_type},
        }
        if amount > 0 and operation != CardcomOperation.CREATE_TOKEN_ONLY:
            payload["Document"] = {
                "Name": customer_name or customer_email or "Customer",
                "Email": customer_email or "",
                "Products": [
                    {"Description": product_name, "UnitCost": amount, "Quantity": 1}
                ],
            }
        return payload

    async def create_low_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a hosted payment page (LowProfile).

        Args:
            payload: Request built by ``build_low_profile_payload``

        Returns:
            Dict[str, Any]: Gateway response with ``LowProfileId`` and ``Url``

        Raises:
            CardcomError: If the gateway rejects the request
        """
        logger.info(
            "creating_low_profile",
            operation=payload.get("Operation"),
            amount=payload.get("Amount"),
            return_value=payload.get("ReturnValue"),
        )

        response = await self._request(
            "create_low_profile", LOW_PROFILE_CREATE_PATH, json_body=payload
        )
        data = response.json()

        response_code = data.get("ResponseCode")
        if response_code != 0 or not data.get("LowProfileId"):
            self._raise_error(
                "create_low_profile",
                CardcomError(
                    data.get("Description") or "LowProfile creation failed",
                    CardcomErrorType.PERMANENT,
                    response_code=str(response_code),
                ),
            )

        logger.info("low_profile_created", low_profile_id=data["LowProfileId"])
        return data

    async def get_lp_result(self, low_profile_id: str) -> Dict[str, Any]:
        """
        Fetch the result of a LowProfile.

        The response has the same shape as the webhook callback. A non-zero
        ResponseCode is returned to the caller, not raised: it usually means
        the customer has not completed the page yet.

        Args:
            low_profile_id: LowProfile identifier

        Returns:
            Dict[str, Any]: Gateway result
        """
        logger.info("retrieving_low_profile_result", low_profile_id=low_profile_id)

        body = {**self._credentials(), "LowProfileId": low_profile_id}
        response = await self._request("get_lp_result", LOW_PROFILE_RESULT_PATH, json_body=body)
        return response.json()

    async def charge_token(
        self,
        token: str,
        amount_cents: int,
        currency: str = "ILS",
        num_payments: int = 1,
        card_owner_name: Optional[str] = None,
        card_owner_email: Optional[str] = None,
        card_validity_month: Optional[str] = None,
        card_validity_year: Optional[str] = None,
        unique_reference: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Charge a stored card token.

        Args:
            token: Cardcom card token
            amount_cents: Amount in cents (agorot)
            currency: Currency code
            num_payments: Number of installments
            card_owner_name: Optional card owner name
            card_owner_email: Optional card owner email
            card_validity_month: Optional card expiry month
            card_validity_year: Optional card expiry year
            unique_reference: Unique deal reference, prevents double charges

        Returns:
            Dict[str, str]: Parsed response with ``InternalDealNumber``

        Raises:
            CardcomError: If the charge is declined or the call fails
        """
        reference = unique_reference or f"charge_{uuid.uuid4().hex[:16]}"
        form: Dict[str, Any] = {
            "TerminalNumber": self.settings.cardcom_terminal_number,
            "UserName": self.settings.cardcom_api_name,
            "TokenToCharge.APIPassword": self.settings.cardcom_api_password,
            "TokenToCharge.Token": token,
            "TokenToCharge.SumToBill": f"{amount_cents / 100:.2f}",
            "TokenToCharge.NumOfPayments": num_payments,
            "TokenToCharge.CoinID": ISO_COIN_IDS.get(currency.upper(), 1),
            "TokenToCharge.APILevel": "10",
            "TokenToCharge.UniqAsmachta": reference,
            "TokenToCharge.UniqAsmachtaReturnOriginal": "true",
        }
        if card_owner_name:
            form["TokenToCharge.CardOwnerName"] = card_owner_name
        if card_owner_email:
            form["TokenToCharge.CardOwnerEmail"] = card_owner_email
        if card_validity_month and card_validity_year:
            form["TokenToCharge.CardValidityMonth"] = card_validity_month
            form["TokenToCharge.CardValidityYear"] = card_validity_year

        logger.info(
            "charging_token",
            token=token,
            amount_cents=amount_cents,
            reference=reference,
        )

        response = await self._request("charge_token", CHARGE_TOKEN_PATH, form_body=form)
        data = dict(parse_qsl(response.text, keep_blank_values=True))

        if data.get("ResponseCode") != "0":
            self._raise_error(
                "charge_token",
                CardcomError(
                    data.get("Description") or "Token charge declined",
                    CardcomErrorType.PERMANENT,
                    response_code=data.get("ResponseCode"),
                ),
            )

        logger.info(
            "token_charged",
            deal_number=data.get("InternalDealNumber"),
            amount_cents=amount_cents,
        )
        return data

    async def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Validate a card token with Cardcom.

        Returns:
            Dict[str, Any]: ``is_valid``, ``response_code``, ``description``,
            ``expiration_date``, ``token_status``, ``card_type``
        """
        form = {
            "TerminalNumber": self.settings.cardcom_terminal_number,
            "UserName": self.settings.cardcom_api_name,
            "Password": self.settings.cardcom_api_password,
            "CardToken": token,
            "APILevel": "10",
        }
        response = await self._request("validate_token", VALIDATE_TOKEN_PATH, form_body=form)
        data = dict(parse_qsl(response.text, keep_blank_values=True))

        result = {
            "is_valid": data.get("ResponseCode") == "0",
            "response_code": data.get("ResponseCode"),
            "description": data.get("Description", ""),
            "expiration_date": data.get("ExpirationDate", ""),
            "token_status": data.get("TokenStatus", ""),
            "card_type": data.get("CardType", ""),
        }
        logger.info(
            "token_validated",
            token=token,
            is_valid=result["is_valid"],
            response_code=result["response_code"],
        )
        return result

    async def ping(self) -> float:
        """Measure gateway reachability; returns round-trip seconds."""
        start_time = time.time()
        response = await self.http_client.get("/")
        if response.status_code >= 500:
            raise CardcomError(
                f"Cardcom returned HTTP {response.status_code}", CardcomErrorType.TRANSIENT
            )
        return time.time() - start_time

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()


def extract_card_info(payload: Dict[str, Any]) -> Dict[str, str]:
    """
    Card details from a webhook or GetLpResult payload.

    Defaults match what subscriptions store when the gateway omits a value.
    """
    info = payload.get("TranzactionInfo") or {}
    last4 = payload.get("Last4CardDigits") or info.get("Last4CardDigits") or "0000"
    month = payload.get("CardMonth") or info.get("CardMonth") or "12"
    year = payload.get("CardYear") or info.get("CardYear") or "25"
    return {
        "lastFourDigits": str(last4)[-4:].zfill(4),
        "expiryMonth": str(month).zfill(2),
        "expiryYear": str(year)[-2:],
    }


def extract_token_info(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Token details from a webhook payload, or None when no token was issued."""
    token_info = payload.get("TokenInfo") or {}
    token = token_info.get("Token") or payload.get("Token")
    if not token:
        return None
    expiry = None
    raw_expiry = str(token_info.get("TokenExDate") or "")
    if raw_expiry:
        try:
            expiry = datetime.strptime(raw_expiry[:8], "%Y%m%d").date()
        except ValueError:
            logger.warning("token_expiry_unparseable", value=raw_expiry)
    return {
        "token": str(token),
        "expiry": expiry,
        "approval_number": token_info.get("TokenApprovalNumber") or "",
    }


def extract_owner_email(payload: Dict[str, Any]) -> Optional[str]:
    """Card owner email, looked up in TranzactionInfo and then UIValues."""
    for section in ("TranzactionInfo", "UIValues"):
        email = (payload.get(section) or {}).get("CardOwnerEmail")
        if email:
            return str(email).strip().lower()
    return None


def extract_amount_cents(payload: Dict[str, Any]) -> int:
    """Charged amount in cents from a webhook payload."""
    info = payload.get("TranzactionInfo") or {}
    amount = payload.get("Amount", info.get("Amount", 0)) or 0
    return int(round(float(amount) * 100))


def missing_fields(payload: Dict[str, Any], required: List[str]) -> List[str]:
    return [field for field in required if payload.get(field) in (None, "")]
