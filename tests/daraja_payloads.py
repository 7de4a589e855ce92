"""Daraja callback bodies as the provider sends them."""
from typing import Any, Dict, Optional


def stk_callback_body(
    checkout_request_id: str,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    amount: Optional[int] = 100,
    receipt: str = "TEST123456",
    phone: int = 254712345678,
    merchant_request_id: str = "29115-34620561-1",
) -> Dict[str, Any]:
    callback: Dict[str, Any] = {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20240115143022},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def stk_timeout_body(checkout_request_id: str) -> Dict[str, Any]:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": 1037,
                "ResultDesc": "DS timeout user cannot be reached",
            }
        }
    }


def b2c_result_body(
    conversation_id: str,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: str = "NLJ41HAY6Q",
    amount: int = 500,
) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
        "OriginatorConversationID": "10571-7910404-1",
        "ConversationID": conversation_id,
        "TransactionID": receipt,
    }
    if result_code == 0:
        result["ResultParameters"] = {
            "ResultParameter": [
                {"Key": "TransactionAmount", "Value": amount},
                {"Key": "TransactionReceipt", "Value": receipt},
                {"Key": "ReceiverPartyPublicName", "Value": "254712345678 - Amina Otieno"},
                {"Key": "TransactionCompletedDateTime", "Value": "15.01.2024 14:30:22"},
                {"Key": "B2CUtilityAccountAvailableFunds", "Value": 10116.0},
            ]
        }
    return {"Result": result}


def b2c_timeout_body(conversation_id: str) -> Dict[str, Any]:
    return {
        "Result": {
            "ResultType": 1,
            "ResultCode": 1,
            "ResultDesc": "The request timed out in the queue",
            "OriginatorConversationID": "10571-7910404-1",
            "ConversationID": conversation_id,
        }
    }
