"""
remedybot - plan, sandbox and execute codebase remediation with approval gates.
"""

__version__ = "0.1.0"
__logo__ = "🩹"
