"""Sync tests over real HTTP.

This package covers the HTTP store client against a live server, and the
sync driver's behavior when the network fails.
"""
