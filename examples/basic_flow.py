#!/usr/bin/env python3
"""
Basic Flow Example

Walks a checkout flow through the stage engine: guarded transitions,
middleware, plugins, a stage timer and subscriptions.

Run from project root:
    python examples/basic_flow.py
"""
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from stageflow.config import settings
from stageflow.core.engine import EngineConfig, Stage, StageEngine, TimerSpec, Transition
from stageflow.core.engine.builtin_middleware import (
    create_logging_middleware,
    create_validation_middleware,
)
from stageflow.core.engine.errors import InvalidTransitionError
from stageflow.infra.logging_config import setup_logging
from stageflow.plugins import AnalyticsRecorder, create_logging_plugin

CHECKOUT = EngineConfig(
    initial="cart",
    initial_data={"items": 0, "total": 0},
    stages=[
        Stage(
            name="cart",
            transitions=[
                Transition(event="checkout", target="payment",
                           guard=lambda data, payload: (payload or data)["items"] > 0),
            ],
        ),
        Stage(
            name="payment",
            effect_name="slide-in",
            transitions=[
                Transition(event="pay", target="confirmed"),
                Transition(event="timeout", target="cart"),
            ],
            # Payment form expires after 300ms in this demo
            timers=[TimerSpec(duration_ms=300, event="timeout")],
        ),
        Stage(name="confirmed", effect_name="confetti"),
    ],
)


def banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60 + "\n")


async def demo_checkout() -> None:
    banner("CHECKOUT DEMO")

    engine = StageEngine(CHECKOUT, name="checkout")
    recorder = AnalyticsRecorder()
    engine.install_plugin(create_logging_plugin())
    engine.install_plugin(recorder.plugin)
    engine.add_middleware(create_logging_middleware())
    engine.add_middleware(create_validation_middleware(
        lambda ctx: ctx.to != "confirmed" or ctx.data["total"] > 0,
        message="Nothing to pay for",
    ))
    engine.subscribe(lambda stage, data: print(f"  -> {stage}: {data}"))

    await engine.start()

    try:
        await engine.send("checkout")
    except InvalidTransitionError as exc:
        print(f"  x rejected: {exc}")

    await engine.send("checkout", {"items": 2, "total": 40})
    print(f"  effect: {engine.get_current_stage_effect()}")
    print(f"  timer remaining: {engine.get_timer_remaining_time():.0f}ms")

    # Let the payment form expire
    await asyncio.sleep(0.4)
    await engine.wait_until_idle()
    print(f"  after timeout: {engine.get_current_stage()}")

    await engine.send("checkout")
    result = await engine.send("pay", {"items": 2, "total": 0})
    print(f"  pay with empty total: committed={result.committed} reason={result.reason}")

    await engine.send("pay")
    print(f"  final stage: {engine.get_current_stage()} ({engine.get_current_stage_effect()})")

    await engine.stop()
    print(f"\n  analytics: {recorder.get_summary()}")
    print(f"  metrics: {engine.metrics.collector.get_metrics()['counters']}")


def main():
    setup_logging(settings.log_level, settings.log_json)
    asyncio.run(demo_checkout())


if __name__ == "__main__":
    main()
