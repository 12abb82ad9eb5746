"""
Module entry point for: python -m qextract

    python -m qextract extract <pdf>... --course CS101 --year 2023
    python -m qextract render <json_path>
    python -m qextract serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
