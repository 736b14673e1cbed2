"""HTTP surface of the storefront API."""
