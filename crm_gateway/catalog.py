"""Catalog read path: products joined with their price-book prices."""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import ResolutionError, UpstreamTransportError
from .models import PriceInfo, Product, ProductPage
from .record_client import RecordClient, RecordResponse, soql_quote

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 24
MAX_LIMIT = 200
DEFAULT_PRICEBOOK = "Standard Price Book"

PRODUCT_LIST_QUERY = """
query ProductList($q: String, $limit: Int, $offset: Int) {
  uiapi {
    query {
      Product2(
        where: { or: [{ Name: { like: $q } }, { Description: { like: $q } }] },
        first: $limit,
        offset: $offset,
        orderBy: { Name: { order: ASC } }
      ) {
        totalCount
        edges { node { Id Name { value } ProductCode { value } Description { value } Family { value } } }
      }
    }
  }
}
"""

PRODUCT_DETAIL_QUERY = """
query ProductDetail($id: ID) {
  uiapi {
    query {
      Product2(where: { Id: { eq: $id } }, first: 1) {
        edges { node { Id Name { value } ProductCode { value } Description { value } Family { value } } }
      }
    }
  }
}
"""


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_paging(limit: Any, offset: Any) -> Tuple[int, int]:
    """Clamp ``limit`` to 1..200 and ``offset`` to >= 0."""
    limit = min(max(_int_or(limit, DEFAULT_LIMIT), 1), MAX_LIMIT)
    offset = max(_int_or(offset, 0), 0)
    return limit, offset


def _field(node: Dict[str, Any], name: str) -> Any:
    """Read a UI API field, which may be wrapped as ``{"value": ...}``."""
    value = node.get(name)
    if isinstance(value, dict):
        return value.get("value")
    return value


def _product2(response: RecordResponse) -> Dict[str, Any]:
    if not response.ok or not isinstance(response.data, dict):
        raise UpstreamTransportError(
            "Failed to parse GraphQL response", details=response.payload()
        )
    try:
        return response.data["data"]["uiapi"]["query"]["Product2"] or {}
    except (KeyError, TypeError):
        raise UpstreamTransportError(
            "Failed to parse GraphQL response", details=response.data.get("errors")
        )


def map_product(node: Dict[str, Any], price: PriceInfo) -> Product:
    """Map a Product2 node to the storefront product shape."""
    return Product(
        id=node["Id"],
        name=_field(node, "Name") or "",
        category=_field(node, "Family") or "uncategorized",
        price=price.price or 0,
        currency=price.currency or "USD",
        description=_field(node, "Description") or "",
    )


class CatalogReader:
    """Reads products and prices from the CRM."""

    def __init__(self, records: RecordClient):
        self.records = records

    async def resolve_pricebook_id(self, token: str, pricebook_name: str) -> Optional[str]:
        response = await self.records.query(
            token,
            f"SELECT Id FROM Pricebook2 WHERE Name = '{soql_quote(pricebook_name)}' LIMIT 1",
        )
        return response.first_record().get("Id")

    async def fetch_prices(
        self, token: str, pricebook_id: Optional[str], product_ids: List[str]
    ) -> Dict[str, PriceInfo]:
        if not pricebook_id or not product_ids:
            return {}
        id_list = ",".join(f"'{soql_quote(pid)}'" for pid in product_ids)
        response = await self.records.query(
            token,
            "SELECT Id, UnitPrice, CurrencyIsoCode, Product2Id FROM PricebookEntry "
            f"WHERE Pricebook2Id = '{soql_quote(pricebook_id)}' "
            f"AND Product2Id IN ({id_list}) AND IsActive = true",
        )
        if not response.ok:
            raise UpstreamTransportError("Failed to parse price response", details=response.payload())
        prices: Dict[str, PriceInfo] = {}
        for record in response.records:
            prices[record["Product2Id"]] = PriceInfo(
                price=record.get("UnitPrice") or 0,
                currency=record.get("CurrencyIsoCode") or "USD",
            )
        return prices

    async def list_products(
        self,
        token: Optional[str],
        query: str = "",
        limit: Any = DEFAULT_LIMIT,
        offset: Any = 0,
        pricebook_name: str = DEFAULT_PRICEBOOK,
    ) -> ProductPage:
        """List products matching ``query`` with prices from ``pricebook_name``.

        Without a token an empty page with source ``fallback`` is returned so
        the storefront can substitute its own data.
        """
        limit, offset = normalize_paging(limit, offset)
        if not token:
            logger.info("No CRM token available, returning fallback catalog page")
            return ProductPage(products=[], total=0, offset=offset, limit=limit, source="fallback")

        response = await self.records.graphql(
            token,
            PRODUCT_LIST_QUERY,
            {"q": f"%{query}%" if query else "%", "limit": limit, "offset": offset},
        )
        product2 = _product2(response)
        nodes = [edge["node"] for edge in product2.get("edges") or [] if edge.get("node")]
        total = product2.get("totalCount") or 0

        product_ids = [node["Id"] for node in nodes if node.get("Id")]
        if not product_ids:
            return ProductPage(products=[], total=total, offset=offset, limit=limit, source="salesforce-graph")

        pricebook_id = await self.resolve_pricebook_id(token, pricebook_name or DEFAULT_PRICEBOOK)
        if not pricebook_id:
            logger.warning(f"Price book '{pricebook_name}' not found, prices default to 0")
        prices = await self.fetch_prices(token, pricebook_id, product_ids)

        products = [
            map_product(node, prices.get(node["Id"], PriceInfo()))
            for node in nodes
            if node.get("Id")
        ]
        logger.info(f"Catalog page: {len(products)} of {total} products (offset={offset})")
        return ProductPage(products=products, total=total, offset=offset, limit=limit, source="salesforce")

    async def get_product(
        self, token: Optional[str], product_id: str, pricebook_name: str = DEFAULT_PRICEBOOK
    ) -> Product:
        """Get a single product with its price.

        Raises:
            ResolutionError: 404 when there is no token or no such product.
        """
        if not token:
            raise ResolutionError("Not found", status_code=404)

        response = await self.records.graphql(token, PRODUCT_DETAIL_QUERY, {"id": product_id})
        edges = _product2(response).get("edges") or []
        node = edges[0].get("node") if edges else None
        if not node:
            raise ResolutionError("Product not found", status_code=404)

        price_response = await self.records.query(
            token,
            "SELECT UnitPrice, CurrencyIsoCode FROM PricebookEntry "
            f"WHERE Pricebook2.Name = '{soql_quote(pricebook_name)}' "
            f"AND Product2Id = '{soql_quote(product_id)}' AND IsActive = true LIMIT 1",
        )
        record = price_response.first_record()
        price = PriceInfo(
            price=record.get("UnitPrice") or 0,
            currency=record.get("CurrencyIsoCode") or "USD",
        )
        return map_product(node, price)
