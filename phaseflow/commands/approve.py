"""
phaseflow approve/reject - Record a decision on a stage document.
"""

from phaseflow.commands.output import print_failure, print_json, print_warnings
from phaseflow.lib.constants import EXIT_OK
from phaseflow.router import CommandRouter


def cmd_approve(args, router: CommandRouter) -> int:
    """Approve a stage, unlocking the next one."""
    result = router.approve(args.id, args.stage, "approved", getattr(args, 'comment', None))

    if getattr(args, 'json', False):
        return print_json(result)
    if not result.ok:
        return print_failure(result)

    print_warnings(result)
    print(f"Approved {args.stage} for '{args.id}'")
    next_stage = result.data["next_stage"]
    if next_stage:
        print(f"Run 'phaseflow {next_stage} {args.id}' to continue")
    else:
        print("All stages approved.")
    return EXIT_OK


def cmd_reject(args, router: CommandRouter) -> int:
    """Reject a stage; the next run of that stage opens a new revision."""
    feedback = getattr(args, 'feedback', None)
    result = router.approve(args.id, args.stage, "rejected", feedback)

    if getattr(args, 'json', False):
        return print_json(result)
    if not result.ok:
        return print_failure(result)

    print_warnings(result)
    if feedback:
        print(f"Rejected {args.stage} for '{args.id}' with feedback:")
        print(f"  {feedback}")
    else:
        print(f"Rejected {args.stage} for '{args.id}'")
    print(f"\nRun 'phaseflow {args.stage} {args.id}' to regenerate")
    return EXIT_OK
