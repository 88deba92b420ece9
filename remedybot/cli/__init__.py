"""CLI module for remedybot."""
