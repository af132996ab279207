"""Management command to replay failed provider and Stripe webhook events."""
from __future__ import annotations

from typing import Iterable, Optional

from django.core.management.base import BaseCommand, CommandError

from billing.models import WebhookEventLog
from billing.services.webhook_processor import processor_for_source


class Command(BaseCommand):
    help = "Replay failed webhook events from the event log through the normal processing pipeline."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--event-id",
            dest="event_ids",
            action="append",
            help="Replay only the specified event id. Can be supplied multiple times.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of events to replay in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Preview events that would be replayed without performing any changes.",
        )

    def handle(self, *args, **options) -> None:
        event_ids: Optional[Iterable[str]] = options.get("event_ids")
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")

        queryset = WebhookEventLog.objects.filter(success=False).order_by("created_at")
        if event_ids:
            queryset = queryset.filter(event_id__in=list(event_ids))
        if limit is not None:
            queryset = queryset[:limit]

        entries = list(queryset)
        if not entries:
            self.stdout.write(self.style.WARNING("No failed webhook events matched the requested filters."))
            return

        if dry_run:
            for entry in entries:
                self.stdout.write(f"Would replay {entry.source} {entry.event_type} event {entry.event_id} (attempts={entry.attempts})")
            self.stdout.write(self.style.WARNING(f"Dry run complete. {len(entries)} events would be replayed."))
            return

        processed = 0
        failed = 0
        for entry in entries:
            self.stdout.write(f"Replaying {entry.source} {entry.event_type} event {entry.event_id}")
            outcome = processor_for_source(entry.source).process(entry.payload)
            if outcome.succeeded:
                processed += 1
            else:
                failed += 1
                self.stderr.write(f"  failed with {outcome.status_code}: {outcome.body}")

        summary = f"Replay complete: {processed} succeeded, {failed} failed, {len(entries)} total."
        if failed:
            raise CommandError(summary)
        self.stdout.write(self.style.SUCCESS(summary))
