"""Marketplace backend for digital goods: catalog, orders, payments and seller earnings."""

__version__ = "0.1.0"
