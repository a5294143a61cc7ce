"""
Parsing of gateway-originated notifications.

Two payload shapes are accepted:

- STK push results: ``{"Body": {"stkCallback": {...}}}`` with an optional
  ``CallbackMetadata.Item`` list of ``Name``/``Value`` pairs
- B2C results and queue timeouts: ``{"Result": {...}}`` with an optional
  ``ResultParameters.ResultParameter`` list of ``Key``/``Value`` pairs
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mpesa_payments.core.errors import MalformedCallbackError

STK = "stk"
B2C = "b2c"


@dataclass
class CallbackNotification:
    """Normalized view of one gateway notification."""

    kind: str
    correlation_id: str
    result_code: int
    result_desc: Optional[str]
    secondary_id: Optional[str] = None
    receipt_number: Optional[str] = None
    amount: Optional[float] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.result_code == 0


def _items_to_dict(items: Any, key_field: str) -> Dict[str, Any]:
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list):
        return {}
    values = {}
    for item in items:
        if isinstance(item, dict) and key_field in item:
            values[item[key_field]] = item.get("Value")
    return values


def _result_code(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedCallbackError(f"Invalid result code: {value!r}")


def _parse_stk(callback: Dict[str, Any], raw: Dict[str, Any]) -> CallbackNotification:
    checkout_request_id = callback.get("CheckoutRequestID")
    if not checkout_request_id:
        raise MalformedCallbackError("STK callback missing CheckoutRequestID")

    metadata: Dict[str, Any] = {}
    if isinstance(callback.get("CallbackMetadata"), dict):
        metadata = _items_to_dict(callback["CallbackMetadata"].get("Item"), "Name")

    receipt = metadata.get("MpesaReceiptNumber")
    phone = metadata.get("PhoneNumber")
    date = metadata.get("TransactionDate")
    return CallbackNotification(
        kind=STK,
        correlation_id=checkout_request_id,
        secondary_id=callback.get("MerchantRequestID"),
        result_code=_result_code(callback.get("ResultCode")),
        result_desc=callback.get("ResultDesc"),
        receipt_number=str(receipt) if receipt is not None else None,
        amount=metadata.get("Amount"),
        phone_number=str(phone) if phone is not None else None,
        transaction_date=str(date) if date is not None else None,
        raw=raw,
    )


def _parse_b2c(result: Dict[str, Any], raw: Dict[str, Any]) -> CallbackNotification:
    conversation_id = result.get("ConversationID") or result.get("OriginatorConversationID")
    if not conversation_id:
        raise MalformedCallbackError("B2C result missing ConversationID")

    parameters: Dict[str, Any] = {}
    if isinstance(result.get("ResultParameters"), dict):
        parameters = _items_to_dict(
            result["ResultParameters"].get("ResultParameter"), "Key"
        )

    amount = parameters.get("TransactionAmount")
    return CallbackNotification(
        kind=B2C,
        correlation_id=conversation_id,
        secondary_id=result.get("OriginatorConversationID"),
        result_code=_result_code(result.get("ResultCode")),
        result_desc=result.get("ResultDesc"),
        receipt_number=result.get("TransactionID") or parameters.get("TransactionReceipt"),
        amount=amount,
        phone_number=parameters.get("ReceiverPartyPublicName"),
        transaction_date=parameters.get("TransactionCompletedDateTime"),
        raw=raw,
    )


def parse_callback(payload: Any) -> CallbackNotification:
    """
    Parse a gateway notification body.

    Args:
        payload: Decoded JSON body as delivered by the gateway

    Returns:
        CallbackNotification: Normalized notification

    Raises:
        MalformedCallbackError: If the body matches no known shape
    """
    if not isinstance(payload, dict):
        raise MalformedCallbackError("Callback body is not a JSON object")

    body = payload.get("Body")
    if isinstance(body, dict) and isinstance(body.get("stkCallback"), dict):
        return _parse_stk(body["stkCallback"], payload)

    result = payload.get("Result")
    if isinstance(result, dict):
        return _parse_b2c(result, payload)

    raise MalformedCallbackError("Unrecognized callback payload shape")


def correlation_hint(payload: Any) -> Optional[str]:
    """Best-effort correlation id from a payload that failed to parse."""
    if not isinstance(payload, dict):
        return None
    candidates: List[Any] = []
    body = payload.get("Body")
    if isinstance(body, dict) and isinstance(body.get("stkCallback"), dict):
        candidates.append(body["stkCallback"].get("CheckoutRequestID"))
    result = payload.get("Result")
    if isinstance(result, dict):
        candidates.append(result.get("ConversationID"))
        candidates.append(result.get("OriginatorConversationID"))
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None
