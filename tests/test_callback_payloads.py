"""
Unit tests for Daraja callback parsing, phone normalization and result codes.
"""
import pytest

from daraja_payloads import b2c_result_body, b2c_timeout_body, stk_callback_body, stk_timeout_body
from tip_reconciliation.core.errors import CallbackValidationError, ValidationError
from tip_reconciliation.integrations import result_codes
from tip_reconciliation.integrations.callback_payloads import (
    CallbackKind,
    PayoutResult,
    PayoutTimeout,
    PushResult,
    PushTimeout,
    extract_correlation_id,
    parse_callback,
)
from tip_reconciliation.integrations.phone import is_valid_phone_number, normalize_phone_number


class TestParseCallback:
    """Test suite for parse_callback."""

    @pytest.mark.unit
    def test_push_result(self) -> None:
        parsed = parse_callback(CallbackKind.PUSH_RESULT, stk_callback_body("ws_CO_1"))

        assert isinstance(parsed, PushResult)
        assert parsed.correlation_id == "ws_CO_1"
        assert parsed.is_success

        result = parsed.to_provider_result()
        assert result.result_code == 0
        assert result.receipt_number == "TEST123456"
        assert result.settled_amount == 100
        assert result.transaction_date == "20240115143022"
        assert result.parameters["Balance"] is None

    @pytest.mark.unit
    def test_push_result_single_item_is_wrapped(self) -> None:
        body = {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "29115-34620561-1",
                    "CheckoutRequestID": "ws_CO_2",
                    "ResultCode": 0,
                    "ResultDesc": "The service request is processed successfully.",
                    "CallbackMetadata": {"Item": {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"}},
                }
            }
        }

        result = parse_callback(CallbackKind.PUSH_RESULT, body).to_provider_result()

        assert result.receipt_number == "NLJ7RT61SV"
        assert result.settled_amount is None

    @pytest.mark.unit
    def test_cancelled_push_has_no_metadata(self) -> None:
        parsed = parse_callback(
            CallbackKind.PUSH_RESULT,
            stk_callback_body("ws_CO_3", result_code=1032, result_desc="Request cancelled by user"),
        )

        result = parsed.to_provider_result()
        assert not parsed.is_success
        assert result.result_name == "CANCELLED_BY_USER"
        assert result.retryable is True
        assert result.receipt_number is None

    @pytest.mark.unit
    def test_string_result_code_is_coerced(self) -> None:
        body = stk_callback_body("ws_CO_4")
        body["Body"]["stkCallback"]["ResultCode"] = "0"

        assert parse_callback(CallbackKind.PUSH_RESULT, body).result_code == 0

    @pytest.mark.unit
    def test_push_timeout(self) -> None:
        parsed = parse_callback(CallbackKind.PUSH_TIMEOUT, stk_timeout_body("ws_CO_5"))

        assert isinstance(parsed, PushTimeout)
        assert parsed.correlation_id == "ws_CO_5"
        assert parsed.to_provider_result().result_name == "TIMEOUT"

    @pytest.mark.unit
    def test_payout_result(self) -> None:
        parsed = parse_callback(CallbackKind.PAYOUT_RESULT, b2c_result_body("AG_1"))

        assert isinstance(parsed, PayoutResult)
        result = parsed.to_provider_result()
        assert result.receipt_number == "NLJ41HAY6Q"
        assert result.settled_amount == 500
        assert result.parameters["ReceiverPartyPublicName"] == "254712345678 - Amina Otieno"

    @pytest.mark.unit
    def test_payout_timeout(self) -> None:
        parsed = parse_callback(CallbackKind.PAYOUT_TIMEOUT, b2c_timeout_body("AG_2"))

        assert isinstance(parsed, PayoutTimeout)
        assert parsed.to_provider_result().result_code is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "kind,body",
        [
            (CallbackKind.PUSH_RESULT, {"Body": {}}),
            (CallbackKind.PUSH_RESULT, {"Body": {"stkCallback": {"CheckoutRequestID": ""}}}),
            (CallbackKind.PUSH_TIMEOUT, {"Result": {"ConversationID": "AG_1"}}),
            (CallbackKind.PAYOUT_RESULT, {"Result": {"ResultCode": 0}}),
            (CallbackKind.PAYOUT_TIMEOUT, {}),
            (CallbackKind.PAYOUT_RESULT, None),
            (CallbackKind.PUSH_RESULT, "Body"),
        ],
    )
    def test_malformed_bodies(self, kind: CallbackKind, body) -> None:
        with pytest.raises(CallbackValidationError):
            parse_callback(kind, body)

    @pytest.mark.unit
    def test_extract_correlation_id(self) -> None:
        assert extract_correlation_id(stk_timeout_body("ws_CO_6")) == "ws_CO_6"
        assert extract_correlation_id(b2c_timeout_body("AG_3")) == "AG_3"
        assert extract_correlation_id({"Body": []}) is None
        assert extract_correlation_id("garbage") is None


class TestPhoneNormalization:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("0712345678", "254712345678"),
            ("0112345678", "254112345678"),
            ("712345678", "254712345678"),
            ("254712345678", "254712345678"),
            ("+254 712-345-678", "254712345678"),
        ],
    )
    def test_valid(self, raw: str, expected: str) -> None:
        assert normalize_phone_number(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "12345", "0812345678", "255712345678", "07123456789"])
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            normalize_phone_number(raw)
        assert not is_valid_phone_number(raw)


class TestResultCodes:
    @pytest.mark.unit
    def test_lookup(self) -> None:
        info = result_codes.lookup(1)

        assert info.name == "INSUFFICIENT_FUNDS"
        assert info.retryable is True
        assert info.category == result_codes.ResultCategory.BUSINESS

    @pytest.mark.unit
    def test_unknown_code(self) -> None:
        assert result_codes.lookup(9999) is None
        assert result_codes.lookup(None) is None

    @pytest.mark.unit
    def test_user_message(self) -> None:
        assert result_codes.user_message(1032) == "Payment was cancelled. You can try again anytime."
        assert result_codes.user_message(9999) == "Payment failed. Please try again."
