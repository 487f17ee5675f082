#!/usr/bin/env python3
"""Command line front end: run actions and follow their output."""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import httpx
from loguru import logger

from . import settings
from .actions import (
    build_job_request,
    execute_blocked_reason,
    filter_stories,
    reconcile_option_selections,
    reconcile_owners,
    reconcile_selected_action,
    toggle_option,
)
from .client import JobApiClient, RequestError
from .controller import JobController
from .models import SUCCESS, JobSnapshot, LogEntry
from .persistence import ConsoleState, JsonFileStore


def format_time(value: str) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%H:%M:%S")
    except (TypeError, ValueError):
        return "--:--:--"


def format_entry(entry: LogEntry) -> str:
    prefix = {"stderr": "ERR", "system": "SYS"}.get(entry.stream, "OUT")
    return f"[{format_time(entry.timestamp)}] {prefix} {entry.text}"


def print_entries(job: Optional[JobSnapshot], entries: List[LogEntry]) -> None:
    for entry in entries:
        print(format_entry(entry), flush=True)


def _print_outcome(controller: JobController) -> int:
    if controller.error is not None:
        print(f"error: {controller.error.message}", file=sys.stderr)
    job = controller.job
    if job is None:
        return 1
    print(f"Job {job.id} {job.status} (exit code {job.exit_code})")
    return 0 if job.status == SUCCESS else 1


def _open_controller(api: JobApiClient, state_file: Path) -> JobController:
    state = ConsoleState(JsonFileStore(state_file))
    controller = JobController(api, state)
    controller.add_listener(print_entries)
    return controller


async def list_actions_command(args: argparse.Namespace) -> int:
    async with JobApiClient(args.api_base) as api:
        state = ConsoleState(JsonFileStore(args.state_file))
        actions = await api.list_actions()
        selections = reconcile_option_selections(actions, state.option_selections.value)
        state.option_selections.set(selections)
        state.selected_action.set(reconcile_selected_action(actions, state.selected_action.value))
        for action in actions:
            marker = "*" if action.id == state.selected_action.value else " "
            print(f"{marker} {action.id}: {action.title}")
            if action.description:
                print(f"    {action.description}")
            for option in action.options:
                checked = "x" if option.id in selections.get(action.id, []) else " "
                print(f"    [{checked}] {option.id} {' '.join(option.args)}")
        state.flush_all()
    return 0


async def run_command(args: argparse.Namespace) -> int:
    async with JobApiClient(args.api_base) as api:
        controller = _open_controller(api, args.state_file)
        state = controller.state
        try:
            if controller.busy:
                print("A job is already active; use 'attach' or 'terminate' first.", file=sys.stderr)
                return 2
            actions = await api.list_actions()
            selections = reconcile_option_selections(actions, state.option_selections.value)
            action = next((item for item in actions if item.id == args.action_id), None)
            if action is None:
                print(f"Unknown action: {args.action_id}", file=sys.stderr)
                return 2
            if args.option is not None:
                selections[action.id] = [item for item in args.option if item in action.option_ids()]
            for option_id in args.toggle or []:
                if option_id in action.option_ids():
                    selections = toggle_option(selections, action.id, option_id)
            state.option_selections.set(selections)

            stories = await api.list_stories()
            owners = args.owner if args.owner is not None else state.selected_owners.value
            owners = reconcile_owners(owners, [owner.name for owner in stories.owners])
            state.selected_owners.set(owners)
            story_ids = [story.id for story in filter_stories(stories.stories, owners)]
            reason = execute_blocked_reason(owners, story_ids)
            if reason:
                print(reason, file=sys.stderr)
                return 2

            job_args, job_story_ids = build_job_request(action, selections[action.id], owners, story_ids)
            job = await controller.submit(action.id, job_args, job_story_ids)
            if job is None:
                return _print_outcome(controller)
            print(f"Started job {job.id}: {job.display_command}")
            await controller.wait_until_stopped()
            return _print_outcome(controller)
        finally:
            await controller.aclose()


async def attach_command(args: argparse.Namespace) -> int:
    async with JobApiClient(args.api_base) as api:
        controller = _open_controller(api, args.state_file)
        try:
            print_entries(controller.job, controller.logs)
            if not controller.attach():
                if controller.job is None:
                    print("No job to attach to.", file=sys.stderr)
                    return 1
                return _print_outcome(controller)
            await controller.wait_until_stopped()
            return _print_outcome(controller)
        finally:
            await controller.aclose()


async def terminate_command(args: argparse.Namespace) -> int:
    async with JobApiClient(args.api_base) as api:
        controller = _open_controller(api, args.state_file)
        try:
            if not controller.can_terminate:
                print("No running job to terminate.", file=sys.stderr)
                return 1
            if await controller.terminate():
                print(f"Termination requested for job {controller.job.id}")
                return 0
            return _print_outcome(controller)
        finally:
            await controller.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trigger workflow actions and follow their logs")
    parser.add_argument("--api-base", default=settings.API_BASE, help="Base URL of the job API")
    parser.add_argument("--state-file", type=Path, default=settings.STATE_FILE, help="Path of the persisted console state")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    actions_parser = subparsers.add_parser("actions", help="List available actions")
    actions_parser.set_defaults(handler=list_actions_command)

    run_parser = subparsers.add_parser("run", help="Run an action and follow its output")
    run_parser.add_argument("action_id", help="Action id")
    run_parser.add_argument("--option", action="append", help="Option id to enable (repeatable)")
    run_parser.add_argument("--toggle", action="append", help="Flip a saved option selection (repeatable)")
    run_parser.add_argument("--owner", action="append", help="Story owner to include (repeatable)")
    run_parser.set_defaults(handler=run_command)

    attach_parser = subparsers.add_parser("attach", help="Resume following the last job")
    attach_parser.set_defaults(handler=attach_command)

    terminate_parser = subparsers.add_parser("terminate", help="Terminate the last job")
    terminate_parser.set_defaults(handler=terminate_command)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "WARNING")
    try:
        return asyncio.run(args.handler(args))
    except (RequestError, httpx.HTTPError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
