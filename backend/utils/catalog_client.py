# backend/utils/catalog_client.py
import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError

from config import Settings
from schemas.cart import CouponDto, ProductDto
from utils.correlation import CORRELATION_ID_HEADER, get_correlation_id
from utils.errors import TransportError

logger = logging.getLogger(__name__)


class _ServiceClient:
    """
    Base for clients of the product/coupon services. Responses come wrapped in
    {"result": ..., "isSuccess": bool, "message": str}.
    """

    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_ID_HEADER] = correlation_id
        return headers

    async def _get(self, path: str) -> dict:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(path, headers=self._headers())
            except httpx.RequestError as e:
                logger.error(f"GET {self.base_url}{path} failed: {e}")
                raise TransportError(f"{self.base_url} is unreachable") from e

        # 404 is a regular "not found" answer; other errors mean the service is unhealthy
        if response.status_code == 404:
            return {"result": None, "isSuccess": False, "message": "Not found"}
        if response.status_code >= 400:
            logger.error("GET %s%s returned %s", self.base_url, path, response.status_code)
            raise TransportError(f"{self.base_url} answered {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{self.base_url} returned a non-JSON body") from e


class ProductCatalog(_ServiceClient):
    @classmethod
    def from_settings(cls, settings: Settings, transport=None) -> "ProductCatalog":
        return cls(settings.PRODUCT_API_URL, settings.HTTP_TIMEOUT_SECONDS, transport)

    async def get_all(self) -> List[ProductDto]:
        body = await self._get("/api/product")
        if not body.get("isSuccess", False):
            logger.warning("Product service refused catalog request: %s", body.get("message"))
            return []
        try:
            return [ProductDto.model_validate(item) for item in body.get("result") or []]
        except PydanticValidationError as e:
            raise TransportError("Product service returned malformed products") from e

    async def get_by_id(self, product_id: int) -> Optional[ProductDto]:
        body = await self._get(f"/api/product/{product_id}")
        if not body.get("isSuccess", False) or not body.get("result"):
            return None
        try:
            return ProductDto.model_validate(body["result"])
        except PydanticValidationError as e:
            raise TransportError(f"Product service returned a malformed product {product_id}") from e


class CouponCatalog(_ServiceClient):
    @classmethod
    def from_settings(cls, settings: Settings, transport=None) -> "CouponCatalog":
        return cls(settings.COUPON_API_URL, settings.HTTP_TIMEOUT_SECONDS, transport)

    async def get_by_code(self, code: str) -> Optional[CouponDto]:
        body = await self._get(f"/api/coupon/GetByCode/{quote(code, safe='')}")
        result = body.get("result")
        if not body.get("isSuccess", False) or not result:
            return None
        try:
            return CouponDto.model_validate(result)
        except PydanticValidationError as e:
            raise TransportError(f"Coupon service returned a malformed coupon {code}") from e
