"""Main function for kinepy."""

from kinepy.core import cli


def run_main() -> None:
    """Main entry point to kinepy."""
    cli.app()


if __name__ == "__main__":
    cli.app()
