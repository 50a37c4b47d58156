#!/usr/bin/env python3
"""Agent factory CLI entrypoint."""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from agentfactory.agents.runner import CLIAgentRunner
from agentfactory.git.worktree import GitWorkspaceManager
from agentfactory.kanban.models import Ticket
from agentfactory.kanban.stats import blocked_reason, format_stats, system_health
from agentfactory.kanban.status import TicketState
from agentfactory.kanban.store import BoardStore
from agentfactory.lib.agents_config import load_agents_config, missing_binaries
from agentfactory.lib.config import load_env_config
from agentfactory.lib.errors import ConfigInvalid, FactoryError, StoreUnavailable
from agentfactory.runner.locking import LockTimeout, orchestrator_lock
from agentfactory.workflow.engine import Orchestrator
from agentfactory.workflow.lifecycle import InvalidTransition, transition, unblock

logger = logging.getLogger(__name__)

DEFAULT_BOARD = '.factory/board.json'
DEFAULT_ENV = 'factory.env'


def open_store(args) -> BoardStore:
    """Load the board, seeding config from factory.env for keys not yet set."""
    board = Path(args.repo) / args.board
    board.parent.mkdir(parents=True, exist_ok=True)
    store = BoardStore(board)
    store.load()

    env_file = Path(args.repo) / DEFAULT_ENV
    if env_file.exists():
        existing = store.config_values()
        for key, value in load_env_config(env_file).items():
            if key not in existing:
                store.set_config(key, value)
    return store


def build_orchestrator(args, store: BoardStore) -> Orchestrator:
    repo = Path(args.repo).resolve()
    agents_config = load_agents_config(repo)
    for binary, roles in missing_binaries(agents_config).items():
        print(f"WARNING: '{binary}' not found on PATH (needed by {', '.join(roles)})")
    workspace = GitWorkspaceManager(repo, remote=args.remote or None)
    return Orchestrator(store, workspace, CLIAgentRunner(agents_config, repo))


def cmd_run(args):
    store = open_store(args)
    orch = build_orchestrator(args, store)
    try:
        with orchestrator_lock(store.path):
            orch.initialize()
            if args.once:
                orch.run_cycle()
                orch.wait_idle()
                orch.dispatcher.shutdown()
                print(format_stats(store.stats()))
                return 0

            cancel = threading.Event()
            signal.signal(signal.SIGTERM, lambda *_: cancel.set())
            try:
                orch.run(cancel)
            except KeyboardInterrupt:
                cancel.set()
    except LockTimeout as e:
        print(f"ERROR: {e}")
        return 1
    return 0


def cmd_status(args):
    store = open_store(args)
    print(format_stats(store.stats()))
    health = system_health(store)
    print(f"Health: {health.status} - {health.message}")
    print()

    for ticket in sorted(store.list_tickets(), key=lambda t: t.id):
        line = f"  {ticket.id:<16} {ticket.status:<20} {ticket.title}"
        if ticket.current_activity:
            line += f"  [{ticket.current_activity}]"
        print(line)
        if ticket.status == TicketState.BLOCKED.value:
            print(f"  {'':<16} -> {blocked_reason(ticket, store)}")
        if ticket.status == TicketState.AWAITING_USER.value and ticket.collaboration:
            for question in ticket.collaboration.open_questions:
                print(f"  {'':<16} ? {question}")

    merges = [m for m in store.merge_queue() if m.status in ('pending', 'in_progress', 'failed')]
    if merges:
        print()
        print('Merge queue:')
        for entry in merges:
            print(f"  {entry.ticket_id:<16} {entry.status:<12} attempts={entry.attempts} {entry.last_error}")

    pool = store.pool_stats()
    print()
    print('Worktrees: ' + ', '.join(f"{k}={v}" for k, v in pool.items()))
    return 0


def cmd_answer(args):
    store = open_store(args)
    orch = build_orchestrator(args, store)
    try:
        ticket = orch.prd.answer_user(args.id, args.text, dispatch=False)
    except (InvalidTransition, KeyError) as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        orch.dispatcher.shutdown()
    print(f"{ticket.id} -> {ticket.status}")
    return 0


def cmd_unblock(args):
    store = open_store(args)
    try:
        ticket = unblock(store, args.id, actor='user', note=args.note or '')
    except (InvalidTransition, KeyError) as e:
        print(f"ERROR: {e}")
        return 1
    print(f"{ticket.id} -> {ticket.status}")
    return 0


def cmd_approve(args):
    store = open_store(args)
    try:
        ticket = transition(store, args.id, TicketState.APPROVED.value, 'user', 'Approved for PRD',
                            expect=TicketState.BACKLOG.value)
    except (InvalidTransition, KeyError) as e:
        print(f"ERROR: {e}")
        return 1
    print(f"{ticket.id} -> {ticket.status}")
    return 0


def cmd_add(args):
    store = open_store(args)
    ticket = Ticket(
        id=args.id,
        title=args.title,
        description=args.description or '',
        domain=args.domain or '',
        priority=args.priority,
        status=TicketState.READY.value if args.ready else TicketState.BACKLOG.value,
        files=args.files or [],
        dependencies=args.depends or [],
    )
    try:
        store.create_ticket(ticket)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Created {ticket.id} ({ticket.status})")
    return 0


def main():
    parser = argparse.ArgumentParser(prog='factory', description='Agent factory orchestrator')
    parser.add_argument('--repo', '-C', default='.', help='Repository root (default: current directory)')
    parser.add_argument('--board', default=DEFAULT_BOARD, help=f'Board file relative to repo (default: {DEFAULT_BOARD})')
    parser.add_argument('--remote', default='origin', help="Git remote ('' for local-only)")
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # factory run
    p_run = subparsers.add_parser('run', help='Run the orchestrator')
    p_run.add_argument('--once', action='store_true', help='Run one tick, wait for its agents, then exit')
    p_run.set_defaults(func=cmd_run)

    # factory status
    p_status = subparsers.add_parser('status', help='Show the board')
    p_status.set_defaults(func=cmd_status)

    # factory answer
    p_answer = subparsers.add_parser('answer', help='Answer open PRD questions')
    p_answer.add_argument('id', help='Ticket ID')
    p_answer.add_argument('text', help='Answer text')
    p_answer.set_defaults(func=cmd_answer)

    # factory unblock
    p_unblock = subparsers.add_parser('unblock', help='Return a blocked ticket to its previous state')
    p_unblock.add_argument('id', help='Ticket ID')
    p_unblock.add_argument('--note', help='Why it is unblocked')
    p_unblock.set_defaults(func=cmd_unblock)

    # factory approve
    p_approve = subparsers.add_parser('approve', help='Approve a backlog ticket for PRD')
    p_approve.add_argument('id', help='Ticket ID')
    p_approve.set_defaults(func=cmd_approve)

    # factory add
    p_add = subparsers.add_parser('add', help='Add a ticket')
    p_add.add_argument('id', help='Ticket ID')
    p_add.add_argument('title', help='Ticket title')
    p_add.add_argument('--description', '-d', help='Description')
    p_add.add_argument('--domain', choices=['frontend', 'backend', 'infra'], help='Development domain')
    p_add.add_argument('--priority', type=int, default=3, choices=[1, 2, 3, 4], help='1 critical .. 4 low')
    p_add.add_argument('--files', nargs='*', help='File patterns the ticket touches')
    p_add.add_argument('--depends', nargs='*', help='Ticket IDs or titles this depends on')
    p_add.add_argument('--ready', action='store_true', help='Skip PRD and add straight to ready')
    p_add.set_defaults(func=cmd_add)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        return args.func(args)
    except (ConfigInvalid, StoreUnavailable) as e:
        print(f"ERROR: {e}")
        return 2
    except FactoryError as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
