"""CLI entry point for fuzzdriver."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NoReturn

import click

from fuzzdriver import __version__
from fuzzdriver.core.config import AppConfig, ConfigManager
from fuzzdriver.core.exceptions import FuzzDriverError
from fuzzdriver.core.health import HealthChecker
from fuzzdriver.core.registry import ComponentRegistry
from fuzzdriver.core.schema import EngineResult, FuzzingTask, SessionStatus
from fuzzdriver.core.service import EngineService
from fuzzdriver.engines import register_builtin_engines
from fuzzdriver.reporters import JsonReporter, to_json


def _load_config(project_root: Path | None = None) -> ConfigManager:
    config = ConfigManager(project_root=project_root)
    try:
        config.load()
    except FuzzDriverError as e:
        _fail(e)
    return config


def _setup_logging(verbose: bool, config: AppConfig) -> None:
    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    level = logging.DEBUG if verbose or config.engine.debug_logging else logging.INFO
    logging.getLogger("fuzzdriver").setLevel(level)


def _make_registry() -> ComponentRegistry:
    registry = ComponentRegistry()
    register_builtin_engines(registry)
    return registry


def _start_service(config: AppConfig) -> EngineService:
    service = EngineService(config=config, registry=_make_registry())
    service.start()
    return service


def _parse_options(pairs: tuple[str, ...]) -> dict[str, str]:
    options: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--option")
        options[key] = value
    return options


def _fail(error: FuzzDriverError) -> NoReturn:
    click.echo(f"Error: {error}", err=True)
    raise SystemExit(1)


def _echo_result(result: EngineResult) -> None:
    click.echo(f"Session {result.session_id} ({result.engine_name}): {result.status.value}")
    click.echo(f"  executions: {result.executions}  coverage: {result.coverage}  duration: {result.duration_seconds:.1f}s")
    if result.error_message:
        click.echo(f"  {result.error_message}")
    click.echo(f"  crashes: {result.crash_count}")
    for crash in result.crashes:
        click.echo(f"    - {crash.describe()}")
    for path in result.crash_files:
        click.echo(f"    artifact: {path}")
    for path in result.minimized_crash_files:
        click.echo(f"    minimized: {path}")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging (includes raw engine output).")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """fuzzdriver: run libFuzzer and AFL fuzzing sessions."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Verify engine toolchains and the work directory; show suggestions for failures."""
    config = _load_config()
    verbose = ctx.obj["verbose"]
    checker = HealthChecker(config=config, registry=_make_registry())
    results = checker.check_all()
    # The work directory must be usable and at least one engine present.
    engines_ok = any(r.ok for r in results[1:])
    all_ok = results[0].ok and engines_ok
    for r in results:
        status = "OK" if r.ok else "FAIL"
        click.echo(f"  {r.name}: {status}")
        if verbose or not r.ok:
            click.echo(f"    {r.message}")
        if (verbose or not r.ok) and r.suggestion:
            click.echo(f"    → {r.suggestion}")
    if all_ok:
        click.echo("All checks passed." if all(r.ok for r in results) else "Ready (some engines unavailable).")
    else:
        click.echo("Some checks failed. Fix the issues above or follow the suggested steps.", err=True)
        raise SystemExit(1)


@main.command()
def engines() -> None:
    """List registered engines and whether they are available on this host."""
    config = _load_config()
    registry = _make_registry()
    click.echo("Fuzzing engines:")
    for name in registry.list_engines():
        engine = registry.get_engine(name)
        engine.initialize(config.config.engine)
        status = "available" if engine.is_available() else "not available"
        click.echo(
            f"  {name} ({engine.display_name}): {status}; "
            f"platforms: {', '.join(engine.get_supported_platforms())}; "
            f"formats: {', '.join(engine.get_supported_formats())}"
        )


@main.command()
@click.argument("target", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--corpus", type=click.Path(path_type=Path), help="Seed corpus directory or file.")
@click.option("--timeout", type=int, default=0, help="Total fuzzing time in seconds (default: from config).")
@click.option("--memory", type=int, default=0, help="Memory limit in MB (default: from config).")
@click.option("--engine", "engine_name", default="", help="Engine to use (default: best available).")
@click.option("--option", "options", multiple=True, help="Engine option as KEY=VALUE (repeatable).")
@click.option("--arg", "args", multiple=True, help="Argument passed to the target (repeatable).")
@click.option("--max-crashes", type=int, default=0, help="Stop recording crashes after this many.")
@click.option("--minimize", is_flag=True, help="Minimize every crash artifact after the run.")
@click.option("--coverage", "enable_coverage", is_flag=True, help="Write a raw coverage profile during the run.")
@click.option("--output", "output_path", type=click.Path(path_type=Path), help="Write the result to this JSON file.")
@click.pass_context
def fuzz(
    ctx: click.Context,
    target: Path,
    corpus: Path | None,
    timeout: int,
    memory: int,
    engine_name: str,
    options: tuple[str, ...],
    args: tuple[str, ...],
    max_crashes: int,
    minimize: bool,
    enable_coverage: bool,
    output_path: Path | None,
) -> None:
    """Fuzz TARGET until the timeout expires or the engine exits."""
    config = _load_config()
    _setup_logging(ctx.obj["verbose"], config.config)
    task = FuzzingTask(
        target_name=target.name,
        target_path=target.resolve(),
        arguments=list(args),
        corpus_path=corpus,
        timeout_seconds=timeout,
        memory_limit_mb=memory,
        engine_name=engine_name,
        engine_options=_parse_options(options),
        enable_coverage=enable_coverage,
        enable_minimization=minimize,
        max_crashes=max_crashes,
    )
    try:
        service = _start_service(config.config)
    except FuzzDriverError as e:
        _fail(e)
    try:
        handle = service.start_fuzzing(task)
        click.echo(f"Started session {handle.session_id} on {handle.engine_name}")
        try:
            result = handle.result()
        except KeyboardInterrupt:
            click.echo("Interrupted; stopping session...", err=True)
            service.stop_fuzzing(handle.engine_name, handle.session_id)
            result = handle.result()
    except FuzzDriverError as e:
        _fail(e)
    finally:
        service.shutdown()

    _echo_result(result)
    if output_path:
        JsonReporter().report_result(result, output_path)
        click.echo(f"Wrote {output_path}")
    if result.status is SessionStatus.FAILED:
        raise SystemExit(1)


_testcase_options = [
    click.option("--engine", "engine_name", default="", help="Engine to use (default: best available)."),
    click.option("--testcase", required=True, type=click.Path(path_type=Path, exists=True, dir_okay=False)),
    click.option("--target", required=True, type=click.Path(path_type=Path, exists=True, dir_okay=False)),
    click.option("--arg", "args", multiple=True, help="Argument passed to the target (repeatable)."),
]


def testcase_options(func):
    for option in reversed(_testcase_options):
        func = option(func)
    return func


def _resolve_engine_name(service: EngineService, engine_name: str) -> str:
    return engine_name or service.select_default_engine().name


@main.command()
@testcase_options
@click.pass_context
def minimize(ctx: click.Context, engine_name: str, testcase: Path, target: Path, args: tuple[str, ...]) -> None:
    """Shrink a crashing TESTCASE while preserving the crash."""
    config = _load_config()
    _setup_logging(ctx.obj["verbose"], config.config)
    try:
        service = _start_service(config.config)
    except FuzzDriverError as e:
        _fail(e)
    try:
        name = _resolve_engine_name(service, engine_name)
        path = service.minimize_test_case(name, testcase, target, list(args)).result()
    except FuzzDriverError as e:
        _fail(e)
    finally:
        service.shutdown()
    size = path.stat().st_size
    click.echo(f"Minimized {testcase.stat().st_size} -> {size} bytes: {path}")


@main.command()
@testcase_options
@click.option("--output", "output_path", type=click.Path(path_type=Path), help="Write the result to this JSON file.")
@click.pass_context
def reproduce(
    ctx: click.Context,
    engine_name: str,
    testcase: Path,
    target: Path,
    args: tuple[str, ...],
    output_path: Path | None,
) -> None:
    """Run TARGET once against TESTCASE and report whether it crashes."""
    config = _load_config()
    _setup_logging(ctx.obj["verbose"], config.config)
    try:
        service = _start_service(config.config)
    except FuzzDriverError as e:
        _fail(e)
    try:
        name = _resolve_engine_name(service, engine_name)
        result = service.reproduce_crash(name, testcase, target, list(args)).result()
    except FuzzDriverError as e:
        _fail(e)
    finally:
        service.shutdown()

    if result.reproduced:
        click.echo(f"Reproduced: {result.crash_type} (exit code {result.exit_code})")
        if result.crash_address:
            click.echo(f"  address: {result.crash_address}")
        if result.stack_trace:
            click.echo(result.stack_trace)
    else:
        click.echo("Did not reproduce (exit code 0).")
    if output_path:
        JsonReporter().report_reproduction(result, output_path)
        click.echo(f"Wrote {output_path}")


@main.command()
@testcase_options
@click.option("--output", "output_path", type=click.Path(path_type=Path), help="Write coverage to this JSON file.")
@click.pass_context
def coverage(
    ctx: click.Context,
    engine_name: str,
    testcase: Path,
    target: Path,
    args: tuple[str, ...],
    output_path: Path | None,
) -> None:
    """Measure the coverage reached by a single TESTCASE."""
    config = _load_config()
    _setup_logging(ctx.obj["verbose"], config.config)
    try:
        service = _start_service(config.config)
    except FuzzDriverError as e:
        _fail(e)
    try:
        name = _resolve_engine_name(service, engine_name)
        info = service.generate_coverage(name, testcase, target, list(args)).result()
    except FuzzDriverError as e:
        _fail(e)
    finally:
        service.shutdown()

    if not info.available:
        click.echo("Coverage not available for this engine or binary.")
    else:
        click.echo(
            f"Lines: {info.covered_lines}/{info.total_lines} ({info.coverage_percentage:.2f}%)  "
            f"Functions: {info.covered_functions}/{info.total_functions} ({info.function_coverage_percentage:.2f}%)"
        )
    if output_path:
        JsonReporter().report_coverage(info, output_path)
        click.echo(f"Wrote {output_path}")
    elif ctx.obj["verbose"]:
        click.echo(to_json(info))


@main.command()
@click.argument("target", type=click.Path(path_type=Path))
@click.option("--arg", "args", multiple=True, help="Argument passed to the target (repeatable).")
@click.pass_context
def recommend(ctx: click.Context, target: Path, args: tuple[str, ...]) -> None:
    """Suggest engines for TARGET, best first."""
    config = _load_config()
    _setup_logging(ctx.obj["verbose"], config.config)
    try:
        service = _start_service(config.config)
    except FuzzDriverError as e:
        _fail(e)
    try:
        names = service.get_engine_recommendations(target, list(args))
    finally:
        service.shutdown()
    for i, name in enumerate(names, 1):
        click.echo(f"  {i}. {name}")


if __name__ == "__main__":
    main()
