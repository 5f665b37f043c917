"""Organizer payment-gateway integration: connect, fees, checkout, settlement."""

__version__ = "0.1.0"
