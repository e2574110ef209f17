"""
HubSpot CRM record mappers.

One mapper per entity type turns HubSpot object properties (all strings or
null) into canonical attributes.
"""

from typing import Any, Callable, Dict, Optional

from ..constants import EntityType
from ..exceptions import validation_failed
from .mapper_interface import MapperInterface

INVOICE_STATUS_MAP = {
    "paid": "PAID",
    "open": "SENT",
    "sent": "SENT",
    "draft": "DRAFT",
    "voided": "CANCELLED",
    "cancelled": "CANCELLED",
    "overdue": "OVERDUE",
}


def _to_float(
    properties: Dict[str, Any], field: str, default: Optional[float] = None
) -> Optional[float]:
    value = properties.get(field)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise validation_failed(field, value, "not a number", cause=e)


def _to_int(properties: Dict[str, Any], field: str, default: Optional[int] = None) -> Optional[int]:
    number = _to_float(properties, field)
    return default if number is None else int(number)


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class HubSpotContactMapper(MapperInterface):
    def validate_external_data(self, external_data: Dict[str, Any]) -> bool:
        return bool(
            _blank_to_none(external_data.get("email"))
            or _blank_to_none(external_data.get("firstname"))
            or _blank_to_none(external_data.get("lastname"))
        )

    def to_canonical(self, external_data: Dict[str, Any]) -> Dict[str, Any]:
        first_name = _blank_to_none(external_data.get("firstname"))
        last_name = _blank_to_none(external_data.get("lastname"))
        return {
            "email": _blank_to_none(external_data.get("email")),
            "first_name": first_name,
            "last_name": last_name,
            "full_name": f"{first_name} {last_name}" if first_name and last_name else None,
            "job_title": _blank_to_none(external_data.get("jobtitle")),
            "phone": _blank_to_none(external_data.get("phone")),
            "country": _blank_to_none(external_data.get("country")),
            "city": _blank_to_none(external_data.get("city")),
        }


class HubSpotCompanyMapper(MapperInterface):
    def validate_external_data(self, external_data: Dict[str, Any]) -> bool:
        return bool(_blank_to_none(external_data.get("name")))

    def to_canonical(self, external_data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "name": _blank_to_none(external_data.get("name")),
            "domain": _blank_to_none(external_data.get("domain")),
            "industry": _blank_to_none(external_data.get("industry")),
            "country": _blank_to_none(external_data.get("country")),
            "city": _blank_to_none(external_data.get("city")),
            "state": _blank_to_none(external_data.get("state")),
            "zip": _blank_to_none(external_data.get("zip")),
        }


class HubSpotInvoiceMapper(MapperInterface):
    """HubSpot reports the invoice total in hs_subtotal on most portals."""

    def to_canonical(self, external_data: Dict[str, Any]) -> Dict[str, Any]:
        amount = None
        for field in ("hs_subtotal", "hs_invoice_amount", "amount"):
            amount = _to_float(external_data, field)
            if amount is not None:
                break

        raw_status = _blank_to_none(external_data.get("hs_invoice_status"))
        invoice_number = _blank_to_none(external_data.get("hs_invoice_number"))
        return {
            "invoice_number": invoice_number,
            "total_amount": amount if amount is not None else 0.0,
            "balance_due": _to_float(external_data, "hs_balance_due"),
            "currency": _blank_to_none(external_data.get("hs_invoice_currency")) or "USD",
            "status": INVOICE_STATUS_MAP.get(raw_status.lower(), "DRAFT") if raw_status else "DRAFT",
            "issue_date": _blank_to_none(external_data.get("hs_invoice_date")),
            "due_date": _blank_to_none(external_data.get("hs_invoice_due_date")),
            "description": _blank_to_none(external_data.get("hs_invoice_description"))
            or invoice_number,
        }


class HubSpotLineItemMapper(MapperInterface):
    def to_canonical(self, external_data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "product_name": _blank_to_none(external_data.get("name")),
            "product_id": _blank_to_none(external_data.get("hs_product_id")),
            "sku": _blank_to_none(external_data.get("hs_sku")),
            "quantity": _to_int(external_data, "quantity", default=1),
            "unit_price": _to_float(external_data, "price", default=0.0),
            "amount": _to_float(external_data, "amount", default=0.0),
            "currency": _blank_to_none(external_data.get("hs_line_item_currency_code")),
        }


HUBSPOT_MAPPERS: Dict[str, Callable[[], MapperInterface]] = {
    EntityType.CONTACT.value: HubSpotContactMapper,
    EntityType.COMPANY.value: HubSpotCompanyMapper,
    EntityType.INVOICE.value: HubSpotInvoiceMapper,
    EntityType.LINE_ITEM.value: HubSpotLineItemMapper,
}


def get_hubspot_mapper(entity_type: str) -> MapperInterface:
    """
    Mapper for a HubSpot entity type.

    Raises:
        ValidationError: Unknown entity type
    """
    factory = HUBSPOT_MAPPERS.get(entity_type)
    if factory is None:
        raise validation_failed("entity_type", entity_type, "no HubSpot mapper registered")
    return factory()
