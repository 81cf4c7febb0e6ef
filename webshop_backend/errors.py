# webshop_backend/errors.py
"""Error taxonomy shared by the cart and inventory services.

Services raise these; the HTTP gateway maps them to status codes.
"""


class WebshopError(Exception):
    default_message = "Webshop error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(WebshopError):
    default_message = "Invalid input"


class UnknownProduct(InvalidInput):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class NotFound(WebshopError):
    default_message = "Not found"


class Unavailable(WebshopError):
    default_message = "Store unavailable"


class AuthenticationError(WebshopError):
    default_message = "Invalid token"
