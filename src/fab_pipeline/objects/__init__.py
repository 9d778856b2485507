"""Composite objects: loading by URL and runtime spawning."""

from fab_pipeline.objects.loader import ObjectFromUrl, load_object
from fab_pipeline.objects.systems import CommandQueue, ObjectFromUrlSystem

__all__ = ["CommandQueue", "ObjectFromUrl", "ObjectFromUrlSystem", "load_object"]
