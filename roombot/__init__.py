"""Roombot - chat-driven autonomous task agent.

Turns chat requests into model-generated actions and runs them inside a
per-project sandbox.
"""

__version__ = "0.1.0"
