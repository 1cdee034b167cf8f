"""
phaseflow remember - Record a directive for all future stage documents.

Directives are global: every stage generated afterwards, in any phase,
receives them.
"""

from phaseflow.commands.output import print_failure, print_json
from phaseflow.lib.constants import EXIT_OK
from phaseflow.router import CommandRouter


def _list_directives(args, router: CommandRouter) -> int:
    result = router.status()

    if getattr(args, 'json', False):
        return print_json(result)
    if not result.ok:
        return print_failure(result)

    directives = result.data["memory"]
    if not directives:
        print("No directives recorded.")
        return EXIT_OK
    print("Directives:")
    for directive in directives:
        print(f"  - {directive}")
    return EXIT_OK


def cmd_remember(args, router: CommandRouter) -> int:
    """Append a directive, or list them with --list."""
    if getattr(args, 'list', False) or not args.text:
        return _list_directives(args, router)

    result = router.remember(" ".join(args.text))

    if getattr(args, 'json', False):
        return print_json(result)
    if not result.ok:
        return print_failure(result)

    print(f"Remembered: {result.data['text']}")
    print(f"({result.data['total']} directive(s) will be applied to future stages)")
    return EXIT_OK
