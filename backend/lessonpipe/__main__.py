"""CLI entry point for python -m lessonpipe"""
from lessonpipe.cli.commands import app

if __name__ == "__main__":
    app()
