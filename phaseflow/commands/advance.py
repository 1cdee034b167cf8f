"""
phaseflow spec|research|plan|prd|tasks - Generate a stage document.

Content gathered elsewhere (an interview, an agent) is passed in as the
payload: key=value pairs via --set, or a YAML/JSON mapping via --input.
"""

import sys
from pathlib import Path

import yaml

from phaseflow.commands.output import print_failure, print_json, print_warnings
from phaseflow.lib.constants import EXIT_ERROR, EXIT_OK
from phaseflow.router import CommandRouter


def parse_payload(pairs: list[str] | None, input_file: str | None) -> dict:
    """Build a payload from --input FILE then --set key=value overrides.

    Raises:
        ValueError: Malformed pair or input file that is not a mapping
    """
    payload = {}

    if input_file:
        data = yaml.safe_load(Path(input_file).read_text())
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"{input_file} must contain a mapping, got {type(data).__name__}")
        payload.update(data or {})

    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Invalid --set value '{pair}' (expected key=value)")
        key, _, value = pair.partition("=")
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid --set value '{pair}' (empty key)")
        payload[key] = value.strip()

    return payload


def cmd_advance(args, router: CommandRouter) -> int:
    """Generate (or regenerate) a stage document for a phase."""
    try:
        payload = parse_payload(getattr(args, 'set', None), getattr(args, 'input', None))
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR

    result = router.advance(args.stage, args.id, payload)

    if getattr(args, 'json', False):
        return print_json(result)
    if not result.ok:
        return print_failure(result)

    print_warnings(result)
    record = result.data["record"]
    print(f"{args.id}: {args.stage} is {record['status']} (revision {record['revision']})")
    print(f"Document: {result.data['document']}")
    print()
    print("Next steps:")
    print(f"  phaseflow approve {args.id} {args.stage}            - Approve the document")
    print(f"  phaseflow reject {args.id} {args.stage} -f \"...\"    - Request changes")
    return EXIT_OK
