"""Output helpers shared by phaseflow commands."""

import json
import sys

from phaseflow.lib.constants import EXIT_CONFLICT, EXIT_ERROR, EXIT_OK, EXIT_REFUSED
from phaseflow.lib.errors import ErrorKind
from phaseflow.router import CommandResult

EXIT_CODES = {
    ErrorKind.PREREQUISITE_NOT_MET.value: EXIT_REFUSED,
    ErrorKind.ALREADY_APPROVED.value: EXIT_REFUSED,
    ErrorKind.PHASE_NOT_FOUND.value: EXIT_REFUSED,
    ErrorKind.CONCURRENT_MODIFICATION.value: EXIT_CONFLICT,
}


def exit_code_for(result: CommandResult) -> int:
    if result.ok:
        return EXIT_OK
    return EXIT_CODES.get(result.error_kind, EXIT_ERROR)


def print_json(result: CommandResult) -> int:
    print(json.dumps(result.model_dump(), indent=2))
    return exit_code_for(result)


def print_warnings(result: CommandResult) -> None:
    for warning in result.warnings:
        print(f"WARNING: {warning}", file=sys.stderr)


def print_failure(result: CommandResult) -> int:
    """Print a failed result to stderr and return its exit code."""
    print_warnings(result)
    print(f"ERROR [{result.error_kind}]: {result.message}", file=sys.stderr)
    if result.error_kind == ErrorKind.CONCURRENT_MODIFICATION.value:
        print("  Another session changed this phase. Re-run the command.", file=sys.stderr)
    return exit_code_for(result)
