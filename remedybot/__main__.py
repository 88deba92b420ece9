"""
Entry point for running remedybot as a module: python -m remedybot
"""

from remedybot.cli.commands import app

if __name__ == "__main__":
    app()
