"""
Shared models, interfaces, exceptions and logging setup for DeskAuth.
"""
