"""
Module entry point for: python -m pdf_extract

Allows running the extractor directly as a module:
    python -m pdf_extract extract <pdf_path> [options]
    python -m pdf_extract info <pdf_path>
    python -m pdf_extract serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
