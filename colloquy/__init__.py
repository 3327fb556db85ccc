"""Colloquy: multi-agent chat with a durable tool-calling conversation engine."""
