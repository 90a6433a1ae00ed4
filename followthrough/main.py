"""
Main entry point for FollowThrough.

CLI Usage:
    # Run the webhook receiver, dashboard and background jobs
    followthrough --serve

    # Sync the calendar once and run change detection
    followthrough --sync

    # Run the full pre-meeting workflow for one calendar event now
    followthrough --run-event EVENT_ID

    # Inspect and maintain workflow sessions
    followthrough --list-sessions
    followthrough --stats
    followthrough --archive

    # Analyse a finished meeting, optionally from a local transcript file
    followthrough --trigger-analysis EVENT_ID --transcript-file notes.txt

    # Use a custom config file / verbose logging
    followthrough --serve --config my_config.yaml --verbose
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from followthrough.config import AppConfig, load_config
from followthrough.services import Services, build_services
from followthrough.session_store import SessionQuery

logger = logging.getLogger(__name__)


def _serve(services: Services) -> None:
    from followthrough.app import create_app

    cfg = services.config
    services.sync_all()
    services.register_webhooks()
    services.schedule_jobs()
    services.scheduler.start()
    try:
        create_app(services).run(host=cfg.server.host, port=cfg.server.port)
    finally:
        services.stop_webhooks()
        services.scheduler.shutdown()


def _sync(services: Services) -> None:
    if not services.sync.registered_users():
        print("No calendar connected. Check the google section of config.yaml and credentials.json.")
        return
    total = services.sync_all()
    print(f"Synced {total} event(s).")
    for brief in services.triggers.get_scheduled_briefs():
        print(f"  Brief for '{brief.title}' at {brief.run_at.strftime('%a %H:%M')}")


def _run_event(services: Services, event_id: str) -> None:
    event = services.calendar_client.get_event(event_id) if services.calendar_client else None
    if event is None:
        print(f"Calendar event not found: {event_id}")
        return
    result = services.engine.start_workflow(event, services.config.user_id)
    print(f"Session {result.session_id}: {result.stage.value} ({result.progress}%)")
    if result.error:
        print(f"  Error: {result.error}")


def _list_sessions(services: Services, limit: int) -> None:
    sessions, total = services.store.find_sessions(SessionQuery(limit=limit))
    if not sessions:
        print("No workflow sessions yet.")
        return

    print(f"\n{'=' * 72}")
    print(f"  Workflow sessions ({len(sessions)} of {total})")
    print(f"{'=' * 72}\n")
    for s in sessions:
        when = s.calendar_event.start_time.strftime("%a %b %d %H:%M")
        print(f"  {s.session_id}  {when}  {s.calendar_event.title}")
        print(f"      {s.stage.value} ({s.progress}%), meeting {s.meeting_status.value}")
        if s.error:
            print(f"      Error: {s.error}")
    print()


def _show_stats(services: Services) -> None:
    stats = services.store.get_session_stats(user_id=services.config.user_id)
    print(f"\n  Sessions:        {stats.total_sessions}")
    print(f"  Completed:       {stats.completed_sessions} ({stats.completion_rate}%)")
    print(f"  With errors:     {stats.errored_sessions}")
    print(f"  Avg processing:  {stats.average_processing_time_ms:.0f} ms")
    print(f"  RAG usage:       {stats.rag_usage_rate}%")
    if stats.sessions_by_stage:
        print("  By stage:")
        for stage, count in sorted(stats.sessions_by_stage.items()):
            print(f"    {stage:<26} {count}")
    if stats.most_active_participants:
        print("  Most active participants:")
        for p in stats.most_active_participants[:5]:
            print(f"    {p.email:<32} {p.session_count}")
    print()


def _trigger_analysis(services: Services, event_id: str, transcript_file: Optional[str] = None) -> None:
    user_id = services.config.user_id
    event = services.sync.find_event(user_id, event_id)
    if event is None and services.calendar_client is not None:
        event = services.calendar_client.get_event(event_id)
    if event is None:
        print(f"Calendar event not found: {event_id}")
        return

    transcript = Path(transcript_file).read_text() if transcript_file else None
    trigger_id = services.analysis.manually_trigger_analysis(
        event_id, user_id, event, test_transcript=transcript,
    )
    trigger = services.analysis.get_trigger(trigger_id)
    print(f"Analysis {trigger_id}: {trigger.status}")
    if trigger.status == "pending":
        print("  Transcript not in Drive yet; --serve keeps checking every few minutes.")


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="FollowThrough - meeting briefs before, follow-ups after",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--serve", action="store_true", help="Run the web app and background jobs")
    action.add_argument("--sync", action="store_true", help="Sync the calendar once and detect changes")
    action.add_argument("--run-event", metavar="EVENT_ID", help="Run the pre-meeting workflow for one event")
    action.add_argument("--list-sessions", action="store_true", help="List recent workflow sessions")
    action.add_argument("--stats", action="store_true", help="Show workflow statistics")
    action.add_argument("--archive", action="store_true", help="Archive old completed sessions")
    action.add_argument("--trigger-analysis", metavar="EVENT_ID", help="Analyse a finished meeting now")

    parser.add_argument("--transcript-file", help="Transcript to analyse (with --trigger-analysis)")
    parser.add_argument("--limit", type=int, default=20, help="Sessions to list (default: 20)")
    parser.add_argument(
        "--config", default="config.yaml",
        help="Path to YAML config file (default: config.yaml)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    # ── Setup logging ──────────────────────────────────────────
    config: AppConfig = load_config(args.config)
    log_level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.debug("Configuration loaded from %s", args.config)

    # ── Execute action ─────────────────────────────────────────
    needs_google = bool(args.serve or args.sync or args.run_event or args.trigger_analysis)
    services = build_services(config, google=needs_google)

    if args.serve:
        _serve(services)
    elif args.sync:
        _sync(services)
    elif args.run_event:
        _run_event(services, args.run_event)
    elif args.list_sessions:
        _list_sessions(services, args.limit)
    elif args.stats:
        _show_stats(services)
    elif args.archive:
        count = services.archive_sessions()
        print(f"Archived {count} session(s).")
    elif args.trigger_analysis:
        if services.calendar_client is not None:
            services.sync_all()
        _trigger_analysis(services, args.trigger_analysis, args.transcript_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
