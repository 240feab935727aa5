"""
Agent Relay - multi-agent task coordination over a shared artifact store.

Role-restricted agents (planners, executor, reviewer, refactorer) plan and
implement a change in turn; a coordinator drives each session through its
phases and every exchange goes through the file-backed store.
"""

__version__ = "0.1.0"
