import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from wikirunner.config import DEFAULT_STEP_BUDGET, PACING_DELAY_S, WALL_CLOCK_BUDGET_S, RunConfig
from wikirunner.embeddings import preload
from wikirunner.errors import NavigationError
from wikirunner.models import RunStatus, SolverType
from wikirunner.navigator import Navigator, RunResult
from wikirunner.wikipedia import WikipediaSource


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Let an agent play the Wikipedia game from START to TARGET.")
    parser.add_argument("start", nargs="?", help="Start page title (omit with --random-start)")
    parser.add_argument("target", help="Target page title")
    parser.add_argument("--solver", type=str.upper, choices=[s.value for s in SolverType],
                        default=SolverType.VECTORS.value)
    parser.add_argument("--model", help="Model name for remote solvers")
    parser.add_argument("--api-key", help="API key for remote solvers (defaults to the provider's env var)")
    parser.add_argument("--max-steps", type=int, default=DEFAULT_STEP_BUDGET)
    parser.add_argument("--time-limit", type=float, default=WALL_CLOCK_BUDGET_S, help="Wall-clock budget in seconds")
    parser.add_argument("--pacing", type=float, default=PACING_DELAY_S, help="Delay between a choice and the next page load")
    parser.add_argument("--random-start", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def print_result(result: RunResult, target: str, max_steps: int) -> None:
    for i, step in enumerate(result.steps, start=1):
        print(f"\n Step {i}: '{step.from_title}' -> '{step.title}'  [{step.solver.value}, {step.duration * 1000:.0f} ms]")
        print(f"   {step.rationale}")

    print("\n" + "=" * 60)
    if result.success:
        print(f"Reached '{target}' in {result.hops} hops!")
        print(f"   Path: {' → '.join(result.path)}")
    elif result.expired:
        print("Run reset: wall-clock budget exhausted")
    elif result.status is RunStatus.FAILED:
        print(f"FAILED: {result.failure_reason}")
        if result.path:
            print(f"   Path so far: {' → '.join(result.path)}")
    else:
        print(f"Run stopped ({result.status.value})")

    print("Final Stats:")
    print(f"   Total hops: {result.hops} / {max_steps}")
    if result.steps:
        avg_ms = sum(s.duration for s in result.steps) / len(result.steps) * 1000
        print(f"   Average decision time: {avg_ms:.0f} ms")


async def play_wikipedia_game(config: RunConfig, pacing: float) -> RunResult:
    navigator = Navigator(WikipediaSource(), pacing_delay=pacing)

    if config.solver is SolverType.VECTORS:
        print("Loading embedding model...")
        await asyncio.to_thread(preload)

    print(f"\n Wikipedia Game: {config.start or '(random)'} → {config.target}")
    print(f"   Solver: {config.solver.value}   Max hops allowed: {config.step_budget}")
    print("=" * 60)

    try:
        return await navigator.run(config)
    except asyncio.CancelledError:
        navigator.abort()
        raise


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.start and not args.random_start:
        print("A start page is required (or pass --random-start).", file=sys.stderr)
        return 2

    try:
        config = RunConfig(
            start=None if args.random_start else args.start,
            target=args.target,
            solver=SolverType(args.solver),
            model=args.model,
            api_key=args.api_key,
            step_budget=args.max_steps,
            wall_clock_budget=args.time_limit,
        )
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    try:
        result = asyncio.run(play_wikipedia_game(config, args.pacing))
    except KeyboardInterrupt:
        print("\nAborted.")
        return 1
    except NavigationError as e:
        print(f"Failed to start: {e}", file=sys.stderr)
        return 2

    print_result(result, config.target, config.step_budget)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
