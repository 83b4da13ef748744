"""URL configuration. HTTP handlers live outside the handoff core."""

urlpatterns: list = []
