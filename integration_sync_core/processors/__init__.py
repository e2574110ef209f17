from .hubspot_mappers import (
    HubSpotCompanyMapper,
    HubSpotContactMapper,
    HubSpotInvoiceMapper,
    HubSpotLineItemMapper,
    get_hubspot_mapper,
)
from .hubspot_source import HubSpotEntitySource
from .mapper_interface import EntityMapper, MapperInterface
from .upstream_source import UpstreamEntitySource

__all__ = [
    "EntityMapper",
    "MapperInterface",
    "UpstreamEntitySource",
    "HubSpotEntitySource",
    "HubSpotContactMapper",
    "HubSpotCompanyMapper",
    "HubSpotInvoiceMapper",
    "HubSpotLineItemMapper",
    "get_hubspot_mapper",
]
