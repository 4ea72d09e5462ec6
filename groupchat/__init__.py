"""Groupchat - Multi-agent chat orchestrator.

Lets a moderator agent, participant agents, and a human user share one
conversation, with agent CLIs running as independent subprocesses.
"""

__version__ = "0.1.0"
