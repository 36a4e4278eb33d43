"""Allow running mdkroki with ``python -m mdkroki``."""

from mdkroki.cli import cli

cli()
