"""Entry point for the topic recorder module."""

from __future__ import annotations

from apps.topic_recorder.main import main

if __name__ == "__main__":
    raise SystemExit(main())
