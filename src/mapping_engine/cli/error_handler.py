"""
CLI Error Handling

Translates engine exceptions into a one-line message and a non-zero exit.
"""

import functools
import logging
import sys

import click

from ..lib.exceptions import MappingEngineError, format_exception_details


def handle_engine_error(error: MappingEngineError) -> None:
    """
    Report an engine error and exit

    Args:
        error: Engine exception instance
    """
    logging.debug(format_exception_details(error))
    click.echo(f"Error [{error.code}]: {error.message}", err=True)
    sys.exit(1)


def safe_execute(func):
    """
    Decorator for command execution with error handling

    Args:
        func: Command callback to wrap

    Returns:
        Wrapped callback
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except MappingEngineError as e:
            handle_engine_error(e)
        except click.Abort:
            click.echo("Operation aborted by user", err=True)
            sys.exit(1)

    return wrapper
