"""
Response helpers
"""
import time
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, Optional


def serialize(value: Any) -> Any:
    """Make database rows JSON-friendly (datetimes to ISO strings, Decimals to numbers)"""
    if isinstance(value, dict):
        return {key: serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def success_response(data: Optional[Dict[str, Any]] = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Flat success payload: {"success": true, **data}"""
    response: Dict[str, Any] = {"success": True}
    if message:
        response["message"] = message
    if data:
        response.update(serialize(data))
    return response


def error_payload(message: str, code: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": message, "timestamp": int(time.time())}
    if code:
        payload["code"] = code
    return payload
