"""Payment-related helpers."""

from .stripe_checkout import TOKEN_PACKAGES, create_checkout_session, get_package, list_packages

__all__ = ["TOKEN_PACKAGES", "create_checkout_session", "get_package", "list_packages"]
