"""
DeskAuth desktop login client.

Browser-delegated login against a remote identity service, with persisted
tokens that are refreshed ahead of expiry.
"""

__version__ = "1.0.0"
