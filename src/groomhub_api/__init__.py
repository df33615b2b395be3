"""Groomhub salon loyalty API."""
