#!/usr/bin/env python3
"""phaseflow CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from phaseflow.commands import advance as cmd_advance_module
from phaseflow.commands import approve as cmd_approve_module
from phaseflow.commands import remember as cmd_remember_module
from phaseflow.commands import status as cmd_status_module
from phaseflow.lib.config import PhaseflowConfig, load_config
from phaseflow.lib.templates import TemplateRenderer
from phaseflow.router import CommandRouter
from phaseflow.state.store import StateStore
from phaseflow.workflow.engine import WorkflowEngine
from phaseflow.workflow.models import STAGE_NAMES

STAGE_HELP = {
    "spec": "Generate the specification document (starts a new phase)",
    "research": "Generate the research document (needs approved spec)",
    "plan": "Generate the implementation plan (needs approved research)",
    "prd": "Generate the product requirements (needs approved plan)",
    "tasks": "Generate the task breakdown (needs approved prd)",
}


def configure_logging(config: PhaseflowConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def build_router(config: PhaseflowConfig) -> CommandRouter:
    """Wire store, renderer and engine for a project."""
    store = StateStore(config.state_dir, backup_limit=config.backup_limit)
    renderer = TemplateRenderer(config.templates_dir)
    return CommandRouter(WorkflowEngine(store, renderer))


def get_router(args) -> CommandRouter:
    config = load_config(Path(args.project_dir) if args.project_dir else None)
    configure_logging(config, args.verbose)
    return build_router(config)


def cmd_advance(args):
    return cmd_advance_module.cmd_advance(args, get_router(args))


def cmd_approve(args):
    return cmd_approve_module.cmd_approve(args, get_router(args))


def cmd_reject(args):
    return cmd_approve_module.cmd_reject(args, get_router(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_router(args))


def cmd_remember(args):
    return cmd_remember_module.cmd_remember(args, get_router(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='phaseflow', description='Phase documentation workflow')
    parser.add_argument('--project-dir', '-C', help='Project directory (default: current directory)')
    parser.add_argument('--json', action='store_true', help='Print the raw command result as JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # phaseflow spec|research|plan|prd|tasks
    for stage in STAGE_NAMES:
        p_stage = subparsers.add_parser(stage, help=STAGE_HELP[stage])
        p_stage.add_argument('id', help='Phase ID (e.g., st01-user-auth)')
        p_stage.add_argument('--set', '-s', action='append', metavar='KEY=VALUE',
                             help='Payload field (repeatable)')
        p_stage.add_argument('--input', '-i', metavar='FILE', help='YAML/JSON payload file')
        p_stage.set_defaults(func=cmd_advance, stage=stage)

    # phaseflow approve
    p_approve = subparsers.add_parser('approve', help='Approve a stage document')
    p_approve.add_argument('id', help='Phase ID')
    p_approve.add_argument('stage', choices=STAGE_NAMES, help='Stage to approve')
    p_approve.add_argument('--comment', '-c', help='Approval comment')
    p_approve.set_defaults(func=cmd_approve)

    # phaseflow reject
    p_reject = subparsers.add_parser('reject', help='Reject a stage document and request changes')
    p_reject.add_argument('id', help='Phase ID')
    p_reject.add_argument('stage', choices=STAGE_NAMES, help='Stage to reject')
    p_reject.add_argument('--feedback', '-f', help='Requested changes')
    p_reject.set_defaults(func=cmd_reject)

    # phaseflow status
    p_status = subparsers.add_parser('status', help='Show all phases, or one phase in detail')
    p_status.add_argument('id', nargs='?', help='Phase ID (lists all phases if omitted)')
    p_status.set_defaults(func=cmd_status)

    # phaseflow remember
    p_remember = subparsers.add_parser('remember', help='Record a directive for all future documents')
    p_remember.add_argument('text', nargs='*', help='Directive text')
    p_remember.add_argument('--list', '-l', action='store_true', help='List recorded directives')
    p_remember.set_defaults(func=cmd_remember)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
