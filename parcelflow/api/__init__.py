"""Parcelflow polling API."""
