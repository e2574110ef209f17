"""
HubSpot CRM search API as an incremental sync source.

Lists objects with ``POST /crm/v3/objects/{object}/search`` filtered on the
last-modified property (``GTE``, epoch milliseconds), sorted ascending, and
paged with the ``after`` cursor.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import HubSpotConfig, get_config
from ..constants import EntityType
from ..exceptions import UpstreamFetchError, UpstreamUnavailableError
from ..schemas.sync_schemas import RecordError, UpstreamPage, UpstreamRecord
from ..utils.logger import get_logger
from .upstream_source import UpstreamEntitySource

HUBSPOT_OBJECTS = {
    EntityType.CONTACT.value: "contacts",
    EntityType.COMPANY.value: "companies",
    EntityType.INVOICE.value: "invoices",
    EntityType.LINE_ITEM.value: "line_items",
}

# Contacts predate the hs_ prefix convention
MODIFIED_PROPERTIES = {EntityType.CONTACT.value: "lastmodifieddate"}
DEFAULT_MODIFIED_PROPERTY = "hs_lastmodifieddate"

HUBSPOT_PROPERTIES = {
    EntityType.CONTACT.value: [
        "email",
        "firstname",
        "lastname",
        "jobtitle",
        "phone",
        "country",
        "city",
        "createdate",
        "lastmodifieddate",
    ],
    EntityType.COMPANY.value: [
        "name",
        "domain",
        "industry",
        "country",
        "city",
        "state",
        "zip",
        "createdate",
        "hs_lastmodifieddate",
    ],
    EntityType.INVOICE.value: [
        "hs_invoice_number",
        "hs_subtotal",
        "hs_invoice_amount",
        "amount",
        "hs_balance_due",
        "hs_invoice_currency",
        "hs_invoice_status",
        "hs_invoice_date",
        "hs_invoice_due_date",
        "hs_invoice_description",
        "createdate",
        "hs_lastmodifieddate",
    ],
    EntityType.LINE_ITEM.value: [
        "name",
        "quantity",
        "price",
        "amount",
        "hs_product_id",
        "hs_sku",
        "hs_line_item_currency_code",
        "createdate",
        "hs_lastmodifieddate",
    ],
}


def modified_property(entity_type: str) -> str:
    return MODIFIED_PROPERTIES.get(entity_type, DEFAULT_MODIFIED_PROPERTY)


def to_epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def parse_hubspot_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a HubSpot timestamp property.

    The search API returns ISO-8601 strings; older objects and some
    properties come back as epoch milliseconds.
    """
    if value is None or value == "":
        return None
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class HubSpotEntitySource(UpstreamEntitySource):
    """CRM search client. The bearer token is fetched per request."""

    def __init__(
        self,
        access_token_provider: Callable[[], str],
        config: Optional[HubSpotConfig] = None,
        timeout: Optional[float] = None,
        http_session: Optional[requests.Session] = None,
    ):
        """
        Args:
            access_token_provider: Returns a currently valid access token
            config: Base URL and provider key, defaults to the app config
            timeout: Per-request timeout, defaults to the sync config
            http_session: Optional requests session (injected in tests)
        """
        app_config = get_config()
        self.access_token_provider = access_token_provider
        self.config = config or app_config.hubspot
        self.timeout = timeout or app_config.sync.request_timeout_seconds
        self.http = http_session or requests.Session()
        self.logger = get_logger()

    @classmethod
    def from_token_store(
        cls,
        token_store,
        tenant_id: str,
        config: Optional[HubSpotConfig] = None,
        scheduler=None,
        **kwargs,
    ) -> "HubSpotEntitySource":
        """
        Build a source that reads the tenant's HubSpot access token from the token store.

        With a refresh scheduler the token is refreshed before use when it is
        about to expire; without one the stored token is sent as is.
        """
        config = config or get_config().hubspot

        def access_token() -> str:
            if scheduler is not None:
                return scheduler.get_access_token(config.provider, tenant_id)
            credential = token_store.get_required(config.provider, tenant_id)
            if token_store.is_token_expired(credential):
                get_logger().warning(
                    "HubSpot access token expires soon and no scheduler can refresh it",
                    extra={"tenant_id": tenant_id, "expires_at": credential.expires_at.isoformat()},
                )
            return credential.access_token

        return cls(access_token, config=config, **kwargs)

    def supported_entity_types(self) -> List[str]:
        return list(HUBSPOT_OBJECTS)

    def _search_url(self, entity_type: str) -> str:
        object_name = HUBSPOT_OBJECTS.get(entity_type)
        if object_name is None:
            raise UpstreamFetchError(
                f"Unsupported HubSpot entity type: {entity_type}", entity_type=entity_type
            )
        return f"{self.config.base_url.rstrip('/')}/crm/v3/objects/{object_name}/search"

    def build_search_body(
        self,
        entity_type: str,
        since: Optional[datetime],
        cursor: Optional[str],
        limit: int,
    ) -> Dict[str, Any]:
        prop = modified_property(entity_type)
        body: Dict[str, Any] = {
            "limit": limit,
            "properties": HUBSPOT_PROPERTIES.get(entity_type, [prop]),
            "sorts": [{"propertyName": prop, "direction": "ASCENDING"}],
        }
        if since is not None:
            body["filterGroups"] = [
                {
                    "filters": [
                        {
                            "propertyName": prop,
                            "operator": "GTE",
                            "value": str(to_epoch_millis(since)),
                        }
                    ]
                }
            ]
        if cursor:
            body["after"] = cursor
        return body

    def fetch_modified(
        self,
        entity_type: str,
        since: Optional[datetime],
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> UpstreamPage:
        url = self._search_url(entity_type)
        body = self.build_search_body(entity_type, since, cursor, limit)
        headers = {
            "Authorization": f"Bearer {self.access_token_provider()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            response = self.http.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise UpstreamUnavailableError(
                f"HubSpot search timed out after {self.timeout}s",
                entity_type=entity_type,
                cause=e,
            )
        except requests.RequestException as e:
            raise UpstreamUnavailableError(
                f"HubSpot unreachable: {str(e)}", entity_type=entity_type, cause=e
            )

        if response.status_code >= 500 or response.status_code == 429:
            raise UpstreamUnavailableError(
                f"HubSpot search returned HTTP {response.status_code}",
                entity_type=entity_type,
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            raise UpstreamFetchError(
                f"HubSpot search rejected with HTTP {response.status_code}: {response.text[:500]}",
                entity_type=entity_type,
                http_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamFetchError(
                "HubSpot search returned a non-JSON body", entity_type=entity_type, cause=e
            )

        records: List[UpstreamRecord] = []
        rejected: List[RecordError] = []
        for item in payload.get("results") or []:
            record = self._to_record(entity_type, item)
            if record is None:
                rejected.append(
                    RecordError(
                        upstream_id=str(item.get("id") or "unknown"),
                        error_type="InvalidUpstreamRecord",
                        message="HubSpot search result without id or modification timestamp",
                    )
                )
            else:
                records.append(record)
        next_cursor = ((payload.get("paging") or {}).get("next") or {}).get("after")

        self.logger.debug(
            "Fetched HubSpot page",
            extra={
                "entity_type": entity_type,
                "record_count": len(records),
                "rejected_count": len(rejected),
                "has_more": next_cursor is not None,
            },
        )
        return UpstreamPage(records=records, next_cursor=next_cursor, rejected=rejected)

    def _to_record(self, entity_type: str, item: Dict[str, Any]) -> Optional[UpstreamRecord]:
        properties = item.get("properties") or {}
        last_modified = parse_hubspot_timestamp(
            properties.get(modified_property(entity_type))
        ) or parse_hubspot_timestamp(item.get("updatedAt"))
        if not item.get("id") or last_modified is None:
            return None

        return UpstreamRecord(
            upstream_id=str(item["id"]),
            last_modified=last_modified,
            properties=properties,
            created_at=parse_hubspot_timestamp(properties.get("createdate"))
            or parse_hubspot_timestamp(item.get("createdAt")),
        )
