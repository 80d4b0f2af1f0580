"""Hosting provider header-config adapters."""
