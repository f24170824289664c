"""Services package for the rate limit service."""
