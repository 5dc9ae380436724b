"""
HTTP client for the storefront API, used by the shopper side to read the
catalog and submit a checkout.

Checkout failures are split so the caller knows what to show:
`CheckoutValidationError` (fix the form), `CheckoutConflictError` (stock or
availability changed, adjust the cart) and `CheckoutUnavailableError`
(transport trouble, timeout or server error: safe to retry). The cart is
only cleared once the server has answered 201.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from storefront.cart import Cart

logger = logging.getLogger("storefront.client")


class CheckoutError(Exception):
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class CheckoutValidationError(CheckoutError):
    pass


class CheckoutConflictError(CheckoutError):
    pass


class CheckoutUnavailableError(CheckoutError):
    retryable = True


class StorefrontClient:
    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            with self._client() as client:
                return client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"{method} {path} timed out")
            raise CheckoutUnavailableError("The store did not answer in time, please try again")
        except httpx.RequestError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise CheckoutUnavailableError("The store is unreachable, please try again")

    @staticmethod
    def _error(response: httpx.Response) -> CheckoutError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("error") or response.reason_phrase or "Request failed"
        details = body.get("details")
        if response.status_code in (400, 422):
            return CheckoutValidationError(message, response.status_code, details)
        if response.status_code in (404, 409):
            return CheckoutConflictError(message, response.status_code, details)
        return CheckoutUnavailableError(message, response.status_code, details)

    # --- Catalog ---

    def list_products(self, category: Optional[str] = None, featured: Optional[bool] = None) -> List[dict]:
        params = {}
        if category is not None:
            params["category"] = category
        if featured is not None:
            params["featured"] = str(featured).lower()
        response = self._request("GET", "/api/products", params=params)
        if response.status_code != 200:
            raise self._error(response)
        return response.json()["data"]["products"]

    def get_product(self, product_id: int) -> dict:
        response = self._request("GET", f"/api/products/{product_id}")
        if response.status_code != 200:
            raise self._error(response)
        return response.json()["data"]

    # --- Checkout ---

    def checkout(self, cart: Cart, customer: Dict[str, Any]) -> dict:
        if not len(cart):
            raise CheckoutValidationError(
                "Cart is empty",
                details=[{"field": "items", "message": "At least one item is required", "type": "too_short"}],
            )

        payload = {**customer, "items": cart.to_order_items()}
        response = self._request("POST", "/api/orders", json=payload)
        if response.status_code != 201:
            raise self._error(response)

        order = response.json()["data"]
        cart.clear_cart()
        logger.info("Checkout completed", extra={"order_id": order["id"], "total_amount": order["total_amount"]})
        return order
