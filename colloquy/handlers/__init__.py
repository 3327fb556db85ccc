"""Event handlers for Colloquy.

Handlers listen to bus events and react asynchronously.
Each handler registers itself on specific event types during __init__.
"""
