from .payment import create_app, error_middleware, payment_routes

__all__ = ["create_app", "error_middleware", "payment_routes"]
