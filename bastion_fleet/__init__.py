"""Broadcast shell commands to a fleet of nodes behind an SSH bastion."""

__version__ = "0.3.0"
