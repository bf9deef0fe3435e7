"""Dispatching, rate limiting and recurring scheduling."""
