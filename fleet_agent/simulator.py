from __future__ import annotations

import argparse
import asyncio
import logging
import time
from dataclasses import dataclass

from .config import load_dotenv_files, load_settings
from .connectivity import ConnectivityProbe, SocketConnectivityProbe
from .errors import ConfigError, RegistrationFailure
from .events import PollCompleted, SampleObserved, StateChanged, TrackingError
from .models import OperatorProfile, format_elapsed, speed_kmh
from .observability import configure_logging
from .platforms import SimulatedPlatform, SimulatedRoute
from .runtime import AgentRuntime, build_runtime
from .session import SessionState


logger = logging.getLogger("fleetwatch.simulator")


@dataclass
class SimulatedLink:
    """Real reachability check that can be forced offline."""

    probe: ConnectivityProbe
    offline: bool = False

    def is_connected(self) -> bool:
        if self.offline:
            return False
        return self.probe.is_connected()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fleet agent simulator (simulated positioning + offline queue)")
    parser.add_argument("--name", default="", help="Operator name used if the device is not registered yet")
    parser.add_argument("--phone", default=None)
    parser.add_argument("--employee-id", default=None)
    parser.add_argument(
        "--simulate-offline-after-s",
        type=int,
        default=0,
        help="Stop sending after N seconds (queue only)",
    )
    parser.add_argument(
        "--resume-after-s",
        type=int,
        default=0,
        help="Resume sending after N seconds (flush queue)",
    )
    parser.add_argument("--tick-s", type=float, default=None, help="Override the fix interval")
    parser.add_argument("--poor-fix-ratio", type=float, default=0.1, help="Share of fixes with bad accuracy")
    parser.add_argument("--no-background", action="store_true", help="Simulate a runtime without background updates")
    parser.add_argument("--deny-background", action="store_true", help="Refuse the background permission")
    parser.add_argument("--run-for-s", type=float, default=0.0, help="Exit after N seconds (0 = until Ctrl-C)")
    return parser.parse_args(argv)


async def _toggle_link(link: SimulatedLink, *, offline_after_s: int, resume_after_s: int) -> None:
    start = time.monotonic()
    if offline_after_s > 0:
        await asyncio.sleep(offline_after_s)
        link.offline = True
        logger.info("link forced offline")
    if resume_after_s > 0:
        await asyncio.sleep(max(0.0, resume_after_s - (time.monotonic() - start)))
        link.offline = False
        logger.info("link restored")


async def _report(runtime: AgentRuntime) -> None:
    q = runtime.events.subscribe()
    try:
        while True:
            event = await q.get()
            if isinstance(event, SampleObserved):
                s = event.sample
                logger.info(
                    "fix %.5f,%.5f +/-%sm %.1f km/h %s queue=%s",
                    s.latitude,
                    s.longitude,
                    s.accuracy_m,
                    speed_kmh(s),
                    "accepted" if event.accepted else "rejected",
                    runtime.controller.queue_depth(),
                )
            elif isinstance(event, StateChanged):
                if event.session is not None:
                    logger.info(
                        "state=%s asset=%s on shift %s",
                        event.state,
                        event.session.asset.id,
                        format_elapsed(event.session.elapsed_minutes()),
                    )
                else:
                    logger.info("state=%s", event.state)
            elif isinstance(event, PollCompleted):
                logger.info("shift poll %s", "failed: cannot reach server" if event.error else "ok")
            elif isinstance(event, TrackingError):
                logger.error("tracking error (%s): %s", event.scope, event.message)
    finally:
        runtime.events.unsubscribe(q)


async def _run(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(load_env_files=False)
    except ConfigError as exc:
        raise SystemExit(f"[fleet-agent] invalid config: {exc}") from exc
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    platform = SimulatedPlatform(
        route=SimulatedRoute(seed=settings.device_id, poor_fix_ratio=args.poor_fix_ratio),
        background_granted=not args.deny_background,
        background_available=settings.background_updates and not args.no_background,
        tick_s=args.tick_s,
    )
    link = SimulatedLink(SocketConnectivityProbe(settings.collector_url, timeout_s=settings.connectivity_timeout_s))
    runtime = build_runtime(settings, platform=platform, connectivity=link)

    logger.info(
        "offline_after=%ss resume_after=%ss background=%s",
        args.simulate_offline_after_s,
        args.resume_after_s,
        platform.background_available,
    )

    reporter = asyncio.create_task(_report(runtime), name="event-report")
    toggler = asyncio.create_task(
        _toggle_link(link, offline_after_s=args.simulate_offline_after_s, resume_after_s=args.resume_after_s),
        name="link-toggle",
    )
    try:
        state = await runtime.machine.boot()
        if state == SessionState.REGISTER:
            if not args.name.strip():
                logger.error("device is not registered; pass --name to register")
                return 2
            try:
                operator = await runtime.machine.register(
                    OperatorProfile(name=args.name, phone=args.phone, employee_id=args.employee_id)
                )
            except RegistrationFailure as exc:
                logger.error("registration failed: %s", exc)
                return 1
            logger.info("registered as %s (%s)", operator.name, operator.id)

        if args.run_for_s > 0:
            await asyncio.sleep(args.run_for_s)
        else:
            await asyncio.Event().wait()
        return 0
    finally:
        toggler.cancel()
        reporter.cancel()
        await runtime.close()


def main(argv: list[str] | None = None) -> None:
    load_dotenv_files()
    args = _parse_args(argv)
    try:
        raise SystemExit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
