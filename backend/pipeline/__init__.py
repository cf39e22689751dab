"""Checkout and fulfillment pipeline."""
