"""Minimal client for the EMS-ESP REST API."""

from shcsync.ems.client import EmsClient

__all__ = ["EmsClient"]
