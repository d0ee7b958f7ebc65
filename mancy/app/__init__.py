"""Mancy application package."""
