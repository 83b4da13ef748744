"""Management command to load agent instances and their channels from YAML."""

from pathlib import Path
from typing import Any, Dict, List

import yaml
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from apps.instances.models import Instance, InstanceChannel


class Command(BaseCommand):
    help = "Import agent runtime instances and channel bindings into the database."

    def add_arguments(self, parser):
        parser.add_argument(
            "--file",
            default="seeds/instances.yaml",
            help="Path to the instances seed YAML file.",
        )

    def handle(self, *args, **options):
        seed_path = Path(options["file"])
        if not seed_path.exists():
            raise CommandError(f"Instance seed file not found: {seed_path}")

        payload = self._load_yaml(seed_path)
        instances = payload.get("instances")
        if not isinstance(instances, list):
            raise CommandError("Seed file must define an 'instances' list.")

        with transaction.atomic():
            seeded = self._seed_instances(instances)

        self.stdout.write(self.style.SUCCESS(f"Seeded {len(seeded)} instance(s)."))

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        with path.open("r", encoding="utf-8") as fh:
            return yaml.safe_load(fh) or {}

    def _seed_instances(self, payloads: List[Dict[str, Any]]) -> List[Instance]:
        seeded: List[Instance] = []
        for payload in payloads:
            if "slug" not in payload:
                self.stderr.write(self.style.WARNING(f"Skipping instance without slug: {payload}"))
                continue
            instance, _ = Instance.objects.update_or_create(
                slug=payload["slug"],
                defaults={
                    "name": payload.get("name", payload["slug"]),
                    "container_host": payload.get("container_host", ""),
                    "container_name": payload.get("container_name", ""),
                },
            )
            self._seed_channels(instance, payload.get("channels", []))
            seeded.append(instance)
        return seeded

    def _seed_channels(self, instance: Instance, channels: List[Any]) -> None:
        for channel in channels:
            if isinstance(channel, str):
                channel = {"channel": channel}
            InstanceChannel.objects.update_or_create(
                instance=instance,
                channel=channel["channel"],
                defaults={
                    "is_active": channel.get("is_active", True),
                    "metadata": channel.get("metadata", {}),
                },
            )
