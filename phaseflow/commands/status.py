"""
phaseflow status - Show all phases, or one phase in detail.
"""

from phaseflow.commands.output import print_failure, print_json, print_warnings
from phaseflow.lib.constants import EXIT_OK
from phaseflow.router import CommandRouter

STATUS_MARKERS = {
    "not_started": "[ ]",
    "in_progress": "[~]",
    "approved": "[x]",
    "rejected": "[!]",
}


def _print_listing(phases: dict) -> None:
    if not phases:
        print("No phases yet. Start one with 'phaseflow spec st01-<name>'.")
        return

    print(f"{'PHASE':<32} {'STAGE':<10} {'STATUS':<12} UPDATED")
    for phase_id, entry in phases.items():
        print(f"{phase_id:<32} {entry['stage']:<10} {entry['status']:<12} {entry['updated_at'][:19]}")


def _print_phase(data: dict) -> None:
    print(f"Phase: {data['phase_id']}")
    print("=" * 60)
    print()
    print(f"Title:          {data['title']}")
    print(f"Current stage:  {data['current_stage']} ({data['current_status']})")
    progress = data["progress"]
    print(f"Progress:       {progress['approved']}/{progress['total']} stages approved ({progress['percentage']}%)")
    print(f"Next action:    {data['next_action']}")
    print()

    print("Stages:")
    for stage, record in data["stages"].items():
        marker = STATUS_MARKERS[record["status"]]
        revision = f" r{record['revision']}" if record["revision"] else ""
        print(f"  {marker} {stage:<10} {record['status']}{revision}")

    if data["timeline"]:
        print()
        print("Approvals:")
        for event in data["timeline"]:
            comment = f" - {event['comment']}" if event.get("comment") else ""
            print(f"  {event['timestamp'][:19]}  {event['stage']:<10} {event['decision']} (r{event['revision']}){comment}")

    if data["memory"]:
        print()
        print("Directives:")
        for directive in data["memory"]:
            print(f"  - {directive}")


def cmd_status(args, router: CommandRouter) -> int:
    """Show registry listing, or detailed status of one phase."""
    result = router.status(getattr(args, 'id', None))

    if getattr(args, 'json', False):
        return print_json(result)
    if not result.ok:
        return print_failure(result)

    print_warnings(result)
    if "phases" in result.data:
        _print_listing(result.data["phases"])
    else:
        _print_phase(result.data)
    return EXIT_OK
