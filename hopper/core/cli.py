# hopper/core/cli.py
"""
CLI for the hopper worker and check commands.

Module path resolution:
1. User provides a dotted module path: `hopper worker app.workers:consumer`
2. User is responsible for PYTHONPATH / running from the correct directory
3. Convenience: if cwd has pyproject.toml, cwd is added to sys.path
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys

from hopper.core.consumer import Consumer
from hopper.core.errors import ConfigurationError, ErrorCode, HopperError, LifecycleError
from hopper.core.logging import get_logger, set_default_level
from hopper.core.utils.imports import import_file_path, setup_sys_path_from_cwd

LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Split a locator into (module_path, attribute_name).

    - "app.workers:consumer" -> ("app.workers", "consumer")
    - "app/workers.py" -> ("app/workers.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def _import_locator_module(module_path: str, locator: str):
    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        file_path = os.path.realpath(module_path)
        if not os.path.exists(file_path):
            raise ConfigurationError(
                message=f"module file not found: '{module_path}'",
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'resolved to {file_path}', f'locator: {locator}'],
                help_text='use a dotted module path (app.workers:consumer) or an existing .py file',
            )
        return import_file_path(file_path)

    try:
        return importlib.import_module(module_path)
    except ModuleNotFoundError as e:
        raise ConfigurationError(
            message=f'module not found: {module_path}',
            code=ErrorCode.CLI_INVALID_LOCATOR,
            notes=[str(e), f'sys.path: {sys.path[:5]}...'],
            help_text=(
                'ensure you are running from the correct directory\n'
                'or set PYTHONPATH to include your project root'
            ),
        )


def discover_consumer(locator: str) -> tuple[Consumer, str]:
    """
    Import a module and find the Consumer instance in it.

    Returns:
        (consumer, variable_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(locator)
    module = _import_locator_module(module_path, locator)

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Consumer):
            raise ConfigurationError(
                message=f"'{attr_name}' is not a Consumer instance",
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'module {module.__name__} attribute {attr_name!r}: {type(obj).__name__}'],
                help_text='point the locator at a module-level Consumer(...) variable',
            )
        consumer, var_name = obj, attr_name
    else:
        found = [
            (getattr(module, name), name)
            for name in dir(module)
            if not name.startswith('_') and isinstance(getattr(module, name), Consumer)
        ]
        if len(found) != 1:
            raise ConfigurationError(
                message=(
                    f'no Consumer instance found in {module.__name__}'
                    if not found
                    else f'multiple Consumer instances found in {module.__name__}'
                ),
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'candidates: {[name for _, name in found]}'] if found else [],
                help_text='specify the variable name: module.path:variable',
            )
        consumer, var_name = found[0]

    logger.info(f"Discovered consumer '{var_name}' from {module.__name__}")
    return consumer, var_name


def setup_logging(loglevel: str) -> None:
    """Apply ``loglevel`` to every hopper logger, existing and future."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)

    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('hopper.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


async def run_consumer(consumer: Consumer) -> None:
    """Start ``consumer``, wait for SIGINT/SIGTERM, then close it."""
    logger = get_logger('cli')
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info('Received interrupt signal, stopping consumer...')
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    await consumer.start()
    try:
        await stop.wait()
    finally:
        try:
            await consumer.close()
        except LifecycleError as e:
            logger.error(f'Consumer did not close cleanly: {e}')


def _discover_or_exit(args: argparse.Namespace) -> Consumer:
    logger = get_logger('cli')
    try:
        consumer, _var_name = discover_consumer(args.locator)
    except HopperError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover consumer: {e}')
        sys.exit(1)
    return consumer


def worker_command(args: argparse.Namespace) -> None:
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    logger.info(f'Starting hopper worker with loglevel={args.loglevel}')

    consumer = _discover_or_exit(args)
    if not consumer.declared_tasks:
        logger.warning('No tasks declared on the consumer.')

    try:
        asyncio.run(run_consumer(consumer))
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')
    except Exception as e:
        logger.error(f'Worker failed: {e}')
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Connect, probe broker and backend, exit non-zero on failure."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    consumer = _discover_or_exit(args)

    async def probe() -> dict:
        connect = getattr(consumer.broker, 'connect', None)
        if connect is not None:
            await connect()
        try:
            return await consumer.check_health()
        finally:
            try:
                await consumer.close()
            except LifecycleError as e:
                logger.warning(f'Close after check failed: {e}')

    try:
        outcomes = asyncio.run(probe())
    except LifecycleError as e:
        for name, outcome in e.outcomes.items():
            status = 'FAILED' if isinstance(outcome, BaseException) else 'ok'
            print(f'  {name}: {status} ({outcome})', file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f'error: health check failed: {e}', file=sys.stderr)
        sys.exit(1)

    print('ok: all health checks passed')
    for name, outcome in outcomes.items():
        print(f'  {name}: {"skipped" if outcome is None else outcome}')
    print(f'  {len(consumer.declared_tasks)} task(s) declared')
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hopper',
        description='hopper task queue - consumer management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Using dotted module path (recommended)
  hopper worker app.workers:consumer

  # Using file path
  hopper worker app/workers.py:consumer

  # Probe broker and backend
  hopper check app.workers:consumer
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    worker_parser = subparsers.add_parser('worker', help='Run a consumer until interrupted')
    worker_parser.add_argument('locator', help='Module path (e.g., app.workers:consumer)')
    worker_parser.add_argument(
        '--loglevel',
        choices=LOGLEVELS,
        default='INFO',
        type=str.upper,
        help='Logging level (default: INFO)',
    )

    check_parser = subparsers.add_parser('check', help='Check broker and backend health')
    check_parser.add_argument('locator', help='Module path (e.g., app.workers:consumer)')
    check_parser.add_argument(
        '--loglevel',
        choices=LOGLEVELS,
        default='WARNING',
        type=str.upper,
        help='Logging level (default: WARNING)',
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args()
        match args.command:
            case 'worker':
                worker_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
