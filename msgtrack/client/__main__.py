"""
Entry point for the msgtrack command line client.
"""
from .cli import app


def main():
    """Launch the command line client."""
    app(prog_name="msgtrack")


if __name__ == "__main__":
    main()
