"""Command line entry point: ``wordflow <command>``."""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from wordflow.app_config import load_app_config
from wordflow.app_context import AppContext, build_app_context, resolve_current_user
from wordflow.errors import TranslationInProgressError, WordFlowError
from wordflow.permissions import role_label

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="wordflow",
        description="Localization workflow: projects, AI translation and review.",
    )
    parser.add_argument(
        "--user",
        help="Email of the user to act as (overrides WORDFLOW_USER_EMAIL).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("projects", help="List projects with status and progress.")

    translate = subparsers.add_parser("translate", help="Translate the empty cells of a project.")
    translate.add_argument("project_id", help="Project to translate.")
    translate.add_argument("--page", dest="page_id", help="Page to translate; defaults to the first page.")
    translate.add_argument(
        "--rows",
        nargs="+",
        default=[],
        help="Row ids to retranslate, overwriting existing text.",
    )

    subparsers.add_parser("review", help="List the cells the current user can approve or reject.")

    poll = subparsers.add_parser("poll", help="Reload the store periodically.")
    poll.add_argument(
        "--max-refreshes",
        type=int,
        default=None,
        help="Stop after this many refreshes (runs until interrupted by default).",
    )
    return parser.parse_args(argv)


async def list_projects(context: AppContext) -> int:
    await context.row_store.load_all()
    projects = context.row_store.list_projects()
    if not projects:
        print("No projects.")
        return 0
    for project in projects:
        print(f"{project.id}  {project.name:<30} {project.status:<9} {project.progress:>3}%  "
              f"{project.translated_rows}/{project.total_rows} approved, {project.pending_review} in review")
    return 0


async def translate_project(context: AppContext, project_id: str, page_id: Optional[str], row_ids: List[str]) -> int:
    await context.row_store.load_all()
    if context.row_store.get_project(project_id) is None:
        print(f"Project {project_id} not found.", file=sys.stderr)
        return 1
    if row_ids:
        context.row_store.select_rows(project_id, row_ids)
    try:
        report = await context.queue.translate_project(project_id, page_id)
    except TranslationInProgressError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(f"Requested {report.requested}, translated {report.succeeded}, failed {report.failed}.")
    return 0 if not report.failed else 1


async def list_review(context: AppContext) -> int:
    if context.user is None:
        print("Set --user or WORDFLOW_USER_EMAIL to a known user to review.", file=sys.stderr)
        return 1
    await context.row_store.load_all()
    items = context.approvals.visible_items()
    print(f"{len(items)} row(s) waiting for {context.user.email} ({role_label(context.user.role)}).")
    for item in items:
        for lang in item.target_languages:
            view = context.approvals.cell_view(item, lang)
            if view.actionable:
                print(f"[{item.project_name} / {item.page_name}] {item.row.id} {lang}: "
                      f"{item.row.source_text!r} -> {view.cell.text!r}")
        hidden = context.approvals.hidden_languages(item)
        if hidden:
            print(f"    assigned to another manager: {', '.join(hidden)}")
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config = load_app_config()
    if args.user:
        config.current_user_email = args.user
    context = build_app_context(config)
    await resolve_current_user(context)
    context.notifier.subscribe(lambda n: print(f"[{n.level}] {n.message}"))

    if args.command == "projects":
        return await list_projects(context)
    elif args.command == "translate":
        return await translate_project(context, args.project_id, args.page_id, args.rows)
    elif args.command == "review":
        return await list_review(context)
    elif args.command == "poll":
        await context.poller.run(max_refreshes=args.max_refreshes)
        return 0
    raise ValueError(f"Unhandled command: {args.command}")


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(130)
    except WordFlowError as e:
        logger.error("wordflow failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    run()
