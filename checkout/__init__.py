"""Checkout consistency core for a single-vendor storefront."""

__version__ = "0.1.0"
