"""
Module entry point for: python -m techrecords

Allows running the importer directly as a module:
    python -m techrecords parse <pdf_path> [options]
    python -m techrecords jobs [options]
    python -m techrecords serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
