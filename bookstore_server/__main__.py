"""Allow running as ``python -m bookstore_server``."""

from .cli import main

main()
