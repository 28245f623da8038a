# marketplace/services/catalog_client.py
import requests
from requests import RequestException

from marketplace.domain.errors import ExternalDependencyError
from marketplace.domain.schemas import ProductInfo
from marketplace.utils.retry import http_retry
from marketplace.utils.settings import CATALOG_SERVICE_URL, CATALOG_TIMEOUT_SECONDS
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


class CatalogClient:
    """Read-only product lookups plus the store order counter."""

    def __init__(self, base_url: str | None = None, timeout: int = CATALOG_TIMEOUT_SECONDS):
        self.base_url = (base_url or CATALOG_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def _get(self, path: str) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.info(f"CatalogClient GET {url}")
        return requests.get(url, timeout=self.timeout)

    def _post(self, path: str) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.info(f"CatalogClient POST {url}")
        return requests.post(url, timeout=self.timeout)

    def fetch_product(self, product_id: int) -> ProductInfo | None:
        try:
            resp = self._get(f"/products/{product_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
        except RequestException as e:
            logger.error(f"Catalog lookup for product {product_id} failed: {e}")
            raise ExternalDependencyError("Catalog service is unavailable") from e

        return ProductInfo.model_validate(resp.json())

    def fetch_products(self, product_ids) -> dict[int, ProductInfo]:
        """Products that no longer exist are left out of the result."""
        products = {}
        for product_id in dict.fromkeys(product_ids):
            product = self.fetch_product(product_id)
            if product is not None:
                products[product_id] = product
        return products

    def increment_store_order_count(self, store_id: int) -> None:
        """Not idempotent, so sent once; the calling task owns retries."""
        try:
            resp = self._post(f"/stores/{store_id}/order-count")
            resp.raise_for_status()
        except RequestException as e:
            raise ExternalDependencyError(f"Could not bump order count for store {store_id}") from e
