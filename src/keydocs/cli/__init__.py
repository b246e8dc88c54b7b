"""Command-line interface for keydocs."""

from __future__ import annotations

import logging

import click

from .context import context
from .docs import docs
from .settings import config


@click.group()
@click.version_option(package_name="keydocs")
@click.option("--verbose", "-v", is_flag=True, help="Log progress at INFO level")
def main(verbose: bool):
    """keydocs - Documentation retrieval and credential context ranking.

    \b
      docs     Segment and search documentation files
      context  Suggest credentials for an editor context
      config   Inspect configuration
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


main.add_command(docs)
main.add_command(context)
main.add_command(config)


if __name__ == "__main__":
    main()
