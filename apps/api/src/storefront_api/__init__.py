"""Loyalty ledger and subscription billing service for the storefront."""
