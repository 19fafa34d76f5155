"""Ingestion helpers."""

from __future__ import annotations

import os
import pathlib
from dataclasses import fields

import yaml

from catalog_sync.ingest.models import ChannelConfig

CHANNELS_PATH = pathlib.Path(__file__).with_name("channels.yml")

_CHANNEL_FIELDS = {f.name for f in fields(ChannelConfig)}


class ConfigError(ValueError):
    """Raised when channel configuration is missing or incomplete."""


def channels_path() -> pathlib.Path:
    override = os.environ.get("CHANNELS_PATH")
    return pathlib.Path(override) if override else CHANNELS_PATH


def load_channels(path: pathlib.Path | None = None) -> list[ChannelConfig]:
    source = path or channels_path()
    try:
        data = yaml.safe_load(source.read_text())
    except FileNotFoundError as exc:
        raise ConfigError(f"Channel configuration not found: {source}") from exc
    if not isinstance(data, list):
        raise ConfigError(f"{source} must contain a list of channels")
    return [_build_channel(item) for item in data]


def get_channel(name: str, path: pathlib.Path | None = None) -> ChannelConfig:
    for channel in load_channels(path):
        if channel.name.lower() == name.lower():
            return channel
    raise ConfigError(f"Unknown channel: {name}")


def _build_channel(item: object) -> ChannelConfig:
    if not isinstance(item, dict):
        raise ConfigError(f"Invalid channel entry: {item!r}")
    missing = [key for key in ("name", "channel_id") if item.get(key) in (None, "")]
    if missing:
        raise ConfigError(f"Channel entry missing {', '.join(missing)}: {item!r}")
    unknown = set(item) - _CHANNEL_FIELDS
    if unknown:
        raise ConfigError(f"Unknown channel settings: {', '.join(sorted(unknown))}")
    try:
        channel = ChannelConfig(**item)
        channel.channel_id = int(channel.channel_id)
        channel.transfer_percent = float(channel.transfer_percent)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid channel entry {item!r}: {exc}") from exc
    return channel
