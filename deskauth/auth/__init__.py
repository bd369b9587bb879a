"""
Authentication package for the DeskAuth client.

This package contains the login lifecycle controller, login sessions,
token storage backends, refresh scheduling and JWT claim helpers.
"""
