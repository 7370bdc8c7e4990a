from __future__ import annotations

import ulid


def new_id(prefix: str) -> str:
    return f"{prefix}_{ulid.new().str}"


def new_conversation_id() -> str:
    return new_id("conv")


def new_worker_id() -> str:
    return new_id("wrk")
