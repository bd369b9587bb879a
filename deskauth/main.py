"""
Main entry point for the DeskAuth client.

Command-line interface to log in through the browser, inspect and refresh the
stored login, log out, or keep the login fresh as a long-running daemon.
"""

import sys
import json
import asyncio
import argparse
import logging
from typing import Optional, List, Tuple

from deskauth_common.exceptions import DeskAuthError, ErrorCode, LoginTimeout, handle_exception
from deskauth_common.logging_config import (
    AuditLogger, LogFormat, LogLevel, log_structured_error, setup_logging
)
from deskauth_common.models import AuthEvent
from deskauth.auth.lifecycle import AuthLifecycleController
from deskauth.auth.session import LoginSessionFactory
from deskauth.auth.token_storage import create_token_store
from deskauth.config import AuthConfiguration
from deskauth.identity_client import IdentityClient
from deskauth.notifications import CallbackNotificationSink
from deskauth.retry import RetryPolicy

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_NOT_LOGGED_IN = 2
EXIT_LOGIN_TIMEOUT = 4
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="deskauth",
        description="DeskAuth desktop login client",
        epilog="""
Examples:
  %(prog)s --login            # Log in through the browser
  %(prog)s --status           # Show whether the stored login is still valid
  %(prog)s --status --json    # Same, as JSON
  %(prog)s --refresh          # Refresh the stored tokens now
  %(prog)s --daemon           # Log in if needed and keep tokens fresh
  %(prog)s --logout           # Log out and clear stored tokens

Exit Codes:
  0   - Success
  1   - Operation failed
  2   - Not logged in
  4   - Login timed out
  130 - Cancelled by user (Ctrl+C)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group()
    operation_group.add_argument("--login", action="store_true",
                                 help="Log in through the browser and exit")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Log out and clear stored tokens")
    operation_group.add_argument("--status", action="store_true",
                                 help="Show login status and exit (default)")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Refresh the stored tokens and exit")
    operation_group.add_argument("--daemon", action="store_true",
                                 help="Log in if needed, then keep tokens fresh until interrupted")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Configuration file path")
    config_group.add_argument("--base-url", type=str, metavar="URL",
                              help="Identity service base URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output status in JSON format")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to this file")

    args = parser.parse_args(argv)

    if args.json and any([args.login, args.logout, args.refresh, args.daemon]):
        parser.error("--json can only be used with --status")

    return args


def configure_logging(args, config: AuthConfiguration) -> None:
    """Configure logging from command line arguments and configuration."""
    if args.debug:
        level = LogLevel.DEBUG
    elif args.json:
        # Keep JSON output clean
        level = LogLevel.ERROR
    else:
        try:
            level = LogLevel(config.get_log_level())
        except ValueError:
            level = LogLevel.INFO

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD
    if args.debug and log_format == LogFormat.STANDARD:
        log_format = LogFormat.DETAILED

    setup_logging(
        log_level=level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        max_file_size=config.get_log_max_size(),
        backup_count=config.get_log_backup_count(),
        audit_file=config.get_audit_file()
    )


def _print_notification(event: AuthEvent, message: str) -> None:
    stream = sys.stderr if event in (AuthEvent.LOGIN_TIMEOUT, AuthEvent.LOGIN_FAILED, AuthEvent.REFRESH_FAILED) else sys.stdout
    print(message, file=stream)


def _browser_disabled(url: str) -> None:
    raise DeskAuthError(
        "Opening a browser is disabled by configuration",
        error_code=ErrorCode.LIFECYCLE_BROWSER_UNAVAILABLE
    )


def build_controller(config: AuthConfiguration, quiet: bool = False) -> Tuple[AuthLifecycleController, IdentityClient]:
    """Wire the lifecycle controller and its collaborators from configuration."""
    device_id = config.get_device_id()

    identity_client = IdentityClient(
        base_url=config.get_base_url(),
        device_id=device_id,
        timeout=config.get_request_timeout(),
        provider=config.get_provider(),
        plugin_version=config.get_plugin_version(),
        uri_scheme=config.get_uri_scheme()
    )

    backend = config.get_storage_backend()
    if backend == "secure":
        token_store = create_token_store(
            backend,
            service_name=config.get_storage_service_name(),
            storage_dir=config.get_storage_dir(),
            use_keyring=config.get_use_keyring()
        )
    else:
        token_store = create_token_store(backend)

    sink = CallbackNotificationSink()
    if not quiet:
        sink.add_callback(_print_notification)

    settings = config.get_lifecycle_settings()
    controller = AuthLifecycleController(
        identity_client=identity_client,
        token_store=token_store,
        notification_sink=sink,
        browser_opener=None if config.should_open_browser() else _browser_disabled,
        session_factory=LoginSessionFactory(device_id=device_id),
        settings=settings,
        retry_policy=RetryPolicy(max_attempts=settings.refresh_retry_attempts)
    )
    return controller, identity_client


async def run_login(controller: AuthLifecycleController) -> int:
    """Log in and wait until the login is confirmed."""
    controller.start_login()
    try:
        tokens = await controller.wait_for_login()
    except LoginTimeout:
        return EXIT_LOGIN_TIMEOUT

    if tokens is None:
        logger.error("Login was superseded before it completed")
        return EXIT_FAILURE

    user = await controller.get_user_info()
    if user and user.name:
        print(f"Logged in as {user.name}")
    return EXIT_SUCCESS


async def run_status(controller: AuthLifecycleController, as_json: bool) -> int:
    """Validate the stored login with the server and print it."""
    logged_in = await controller.check_login_status_on_startup()
    user = await controller.get_user_info() if logged_in else None

    if as_json:
        status = {
            'logged_in': logged_in,
            'user': None,
        }
        if user:
            status['user'] = {
                'id': user.id,
                'name': user.name,
                'email': user.email,
                'phone': user.phone,
                'organization': user.organization_name,
                'expires_at': user.expires_at.isoformat() if user.expires_at else None,
            }
        print(json.dumps(status))
    elif logged_in:
        print(f"Logged in{f' as {user.name}' if user and user.name else ''}")
        if user and user.expires_at:
            print(f"Access token expires at {user.expires_at.isoformat()}")
    else:
        print("Not logged in")

    return EXIT_SUCCESS if logged_in else EXIT_NOT_LOGGED_IN


async def run_refresh(controller: AuthLifecycleController, device_id: str) -> int:
    """Refresh the stored tokens once."""
    tokens = await controller.get_tokens()
    if tokens is None or not tokens.is_complete():
        print("Not logged in", file=sys.stderr)
        return EXIT_NOT_LOGGED_IN

    try:
        await controller.refresh_token(tokens.refresh_token, device_id, tokens.session_id, auto=False)
    except DeskAuthError as e:
        print(f"Token refresh failed: {e.user_message}", file=sys.stderr)
        return EXIT_FAILURE

    print("Tokens refreshed")
    return EXIT_SUCCESS


async def run_daemon(controller: AuthLifecycleController) -> int:
    """Log in if needed, then keep the refresh timer running until cancelled."""
    if not await controller.check_login_status_on_startup():
        result = await run_login(controller)
        if result != EXIT_SUCCESS:
            return result

    logger.info("Keeping login fresh, press Ctrl+C to stop")
    await asyncio.Event().wait()
    return EXIT_SUCCESS


async def run_operation(args, config: AuthConfiguration) -> int:
    """Run the selected operation against a freshly wired controller."""
    controller, identity_client = build_controller(config, quiet=args.json)
    try:
        if args.login:
            return await run_login(controller)
        if args.logout:
            await controller.logout()
            return EXIT_SUCCESS
        if args.refresh:
            return await run_refresh(controller, config.get_device_id())
        if args.daemon:
            return await run_daemon(controller)
        return await run_status(controller, args.json)
    finally:
        await controller.shutdown()
        await identity_client.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the client."""
    args = None
    try:
        args = parse_arguments(argv)

        config = AuthConfiguration(args.config)
        if args.base_url:
            config.set_override('server.base_url', args.base_url)

        configure_logging(args, config)

        return asyncio.run(run_operation(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except DeskAuthError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        log_structured_error(logger, e)
        return EXIT_FAILURE
    except Exception as e:
        error = handle_exception(e, context={'operation': 'main'})
        print(f"Fatal error: {error.user_message}", file=sys.stderr)
        if not getattr(args, 'json', False):
            logger.exception("Fatal error in main")
        AuditLogger().log_error(error)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
