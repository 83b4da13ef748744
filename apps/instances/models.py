"""Agent runtime instances and the messaging channels bound to them."""

from django.db import models

from apps.common.models import TimeStampedModel


class InstanceQuerySet(models.QuerySet):
    def eligible_for_polling(self) -> "InstanceQuerySet":
        """Instances mapped to a container and serving at least one active channel."""
        return (
            self.exclude(container_host="")
            .exclude(container_name="")
            .filter(channels__is_active=True)
            .distinct()
        )


class Instance(TimeStampedModel):
    """One AI agent deployment running inside a container on a host."""

    name = models.CharField(max_length=255)
    slug = models.SlugField(unique=True)
    container_host = models.CharField(max_length=255, blank=True)
    container_name = models.CharField(max_length=255, blank=True)

    objects = InstanceQuerySet.as_manager()

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name

    @property
    def has_container(self) -> bool:
        return bool(self.container_host and self.container_name)


class InstanceChannel(TimeStampedModel):
    """Messaging channel (WhatsApp, Telegram, ...) configured on an instance."""

    instance = models.ForeignKey(
        Instance, on_delete=models.CASCADE, related_name="channels"
    )
    channel = models.CharField(max_length=50)
    is_active = models.BooleanField(default=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        unique_together = ("instance", "channel")
        ordering = ["instance_id", "channel"]

    def __str__(self) -> str:
        return f"{self.instance}: {self.channel}"
