"""Parsing of the Daraja STK callback envelope.

Daraja posts::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...",
        "CheckoutRequestID": "...",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1501},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678}
        ]}
    }}}

``CallbackMetadata`` is only present on success.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from app.core.errors import CallbackParseError
from app.services.mpesa.signing import EAT, TIMESTAMP_FORMAT


@dataclass
class StkCallback:
    """A parsed STK callback."""

    checkout_request_id: str
    merchant_request_id: str | None
    result_code: int
    result_description: str
    receipt_number: str | None = None
    amount: Decimal | None = None
    transaction_date: datetime | None = None
    phone_number: str | None = None

    @property
    def is_success(self) -> bool:
        return self.result_code == 0


def _metadata_items(stk_callback: dict[str, Any]) -> dict[str, Any]:
    metadata = stk_callback.get("CallbackMetadata") or {}
    if not isinstance(metadata, dict):
        raise CallbackParseError("CallbackMetadata is not an object")
    items = metadata.get("Item") or []
    if not isinstance(items, list):
        raise CallbackParseError("CallbackMetadata.Item is not a list")
    values: dict[str, Any] = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            values[str(item["Name"])] = item.get("Value")
    return values


def _parse_amount(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_transaction_date(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), TIMESTAMP_FORMAT).replace(tzinfo=EAT)
    except ValueError:
        return None


def parse_stk_callback(payload: Any) -> StkCallback:
    """Parse a callback body.

    Raises:
        CallbackParseError: the body does not have the STK callback shape,
            or a success result carries no receipt number.
    """
    if not isinstance(payload, dict):
        raise CallbackParseError("Callback body is not a JSON object")
    body = payload.get("Body")
    if not isinstance(body, dict) or not isinstance(body.get("stkCallback"), dict):
        raise CallbackParseError("Callback body has no Body.stkCallback")
    stk_callback: dict[str, Any] = body["stkCallback"]

    checkout_request_id = stk_callback.get("CheckoutRequestID")
    if not checkout_request_id or not isinstance(checkout_request_id, str):
        raise CallbackParseError("Callback has no CheckoutRequestID")

    raw_code = stk_callback.get("ResultCode")
    if isinstance(raw_code, bool):
        raise CallbackParseError(f"Callback ResultCode is not an integer: {raw_code!r}")
    try:
        result_code = int(raw_code)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise CallbackParseError(f"Callback ResultCode is not an integer: {raw_code!r}") from None

    callback = StkCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id=stk_callback.get("MerchantRequestID"),
        result_code=result_code,
        result_description=str(stk_callback.get("ResultDesc") or ""),
    )

    if callback.is_success:
        metadata = _metadata_items(stk_callback)
        receipt = metadata.get("MpesaReceiptNumber")
        if not receipt:
            raise CallbackParseError(
                f"Successful callback for {checkout_request_id} has no MpesaReceiptNumber"
            )
        callback.receipt_number = str(receipt)
        callback.amount = _parse_amount(metadata.get("Amount"))
        callback.transaction_date = _parse_transaction_date(metadata.get("TransactionDate"))
        phone = metadata.get("PhoneNumber")
        callback.phone_number = str(phone) if phone is not None else None

    return callback
