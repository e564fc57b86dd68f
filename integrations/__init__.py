"""Cardcom gateway integration."""
from .cardcom_client import CardcomClient, CardcomError, CardcomErrorType

__all__ = ["CardcomClient", "CardcomError", "CardcomErrorType"]
