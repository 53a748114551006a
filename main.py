#!/usr/bin/env python3
"""Wake-on-Demand Game Server Proxy - Main Entry Point

A Python service that listens on the game port in front of a scaled-to-zero
game server and restarts its Railway deployment when a player tries to join.
"""

import asyncio
import argparse
import logging
import logging.handlers
import sys
from pathlib import Path

import sdnotify

from wake_proxy import __version__
from wake_proxy.proxy_manager import ProxyManager
from wake_proxy.config_manager import ConfigManager, ConfigError


def setup_logging(config: dict) -> None:
    """Set up logging configuration."""
    log_config = config.get("logging", {})
    log_level = getattr(logging, log_config.get("level", "INFO").upper())
    log_file = log_config.get("file")
    max_size_mb = log_config.get("max_size_mb", 10)
    backup_count = log_config.get("backup_count", 3)
    console_output = log_config.get("console_output", True)

    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Set up root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler
    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if not log_file:
        return

    # File handler with rotation
    try:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        logging.info(f"Logging configured - Level: {log_config.get('level', 'INFO')}, File: {log_file}")

    except OSError as e:
        print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)
        print("Continuing with console logging only", file=sys.stderr)


async def status_server(port: int, proxy_manager_ref=None):
    """Start a simple HTTP status server for monitoring."""
    from aiohttp import web

    async def get_status(request):
        """Get proxy status as JSON."""
        if proxy_manager_ref and proxy_manager_ref.is_running:
            return web.json_response({
                "status": "running",
                "proxy": proxy_manager_ref.get_status(),
                "config": proxy_manager_ref.get_config_info()
            })
        return web.json_response({
            "status": "stopped",
            "message": "Proxy is not running"
        }, status=503)

    async def health_check(request):
        """Simple health check endpoint."""
        return web.json_response({"status": "healthy"})

    app = web.Application()
    app.router.add_get('/status', get_status)
    app.router.add_get('/health', health_check)
    app.router.add_get('/', get_status)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()

    logging.info(f"Status server started on port {port}")
    return runner


async def main_service(args) -> int:
    """Main service function."""
    try:
        config = ConfigManager(args.config).load_config()
    except ConfigError as e:
        print(f"[FATAL] {e}", file=sys.stderr)
        return 1

    if args.port is not None:
        config["listener"]["port"] = args.port

    setup_logging(config)

    logging.info(f"Starting wake proxy {__version__}")
    logging.info(f"Configuration loaded from: {args.config} and environment")

    notifier = sdnotify.SystemdNotifier()
    proxy_manager = ProxyManager(args.config, config=config)

    if not await proxy_manager.initialize():
        logging.error("Failed to initialize proxy")
        return 1

    status_runner = None
    if config["monitoring"]["status_endpoint_enabled"]:
        status_port = config["monitoring"]["status_endpoint_port"]
        try:
            status_runner = await status_server(status_port, proxy_manager)
        except OSError as e:
            logging.warning(f"Failed to start status server: {e}")

    try:
        if not await proxy_manager.start():
            logging.error("Failed to start proxy service")
            return 1

        notifier.notify("READY=1")
        await proxy_manager.run_forever()
        notifier.notify("STOPPING=1")

    finally:
        if status_runner:
            await status_runner.cleanup()

    logging.info("Wake proxy stopped")
    return 0


def create_example_config(path: str) -> None:
    """Create an example configuration file."""
    config_manager = ConfigManager()
    config_manager.save_example_config(path)
    print(f"Example configuration saved to: {path}")


def validate_config(path: str) -> int:
    """Validate configuration file and environment."""
    try:
        config = ConfigManager(path).load_config()
    except ConfigError as e:
        print(f"Configuration validation failed: {e}", file=sys.stderr)
        return 1

    print("Configuration is valid")
    print("\nConfiguration Summary:")
    print(f"  Listen: {config['listener']['host']}:{config['listener']['port']}")
    print(f"  Health URL: {config['health']['url']}")
    print(f"  Require 'active' status: {config['health']['require_active_status']}")
    print(f"  Railway service: {config['railway']['service_id']} "
          f"(project {config['railway']['project_id']}, environment {config['railway']['environment_id']})")
    print(f"  Cooldown: {config['timing']['cooldown_seconds']} seconds")
    return 0


def show_status(config_path: str) -> int:
    """Show current proxy status from the running service's status endpoint."""
    import requests

    try:
        config = ConfigManager(config_path).load_config()
    except ConfigError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if not config["monitoring"]["status_endpoint_enabled"]:
        print("Status endpoint is disabled in configuration")
        return 0

    port = config["monitoring"]["status_endpoint_port"]
    url = f"http://localhost:{port}/status"

    try:
        response = requests.get(url, timeout=5)
        status_data = response.json()
    except (requests.RequestException, ValueError) as e:
        print(f"Failed to get status: {e}")
        return 1

    print("Wake Proxy Status:")
    print(f"  Status: {status_data['status']}")

    if 'proxy' in status_data:
        proxy = status_data['proxy']
        wake = proxy['wake']
        stats = wake['statistics']
        print(f"  Running: {proxy['is_running']}")
        print(f"  Wake In Flight: {wake['in_flight']}")
        print(f"  Cooldown Remaining: {wake['cooldown_remaining']:.0f}s")
        print(f"  Wake Attempts: {stats['wake_attempts']}")
        print(f"  Successful Restarts: {stats['successful_restarts']}")
        print(f"  Failed Restarts: {stats['failed_restarts']}")
        print(f"  Connections: {proxy['listener']['connections']}")
        print(f"  Status Pings Ignored: {proxy['listener']['status_probes']}")
    return 0


def main():
    """Main entry point with command line argument handling."""
    parser = argparse.ArgumentParser(
        description="Wake-on-Demand Game Server Proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Required environment: PROJECT_ID, ENVIRONMENT_ID, SERVICE_ID, RAILWAY_API_TOKEN

Examples:
  %(prog)s                                # Run with default config.json
  %(prog)s --config /etc/wake-proxy.json  # Run with custom config
  %(prog)s --create-config                # Create example config
  %(prog)s --validate-config              # Validate config and environment
  %(prog)s --status                       # Show current status
        """
    )

    parser.add_argument(
        '--config', '-c',
        default='config.json',
        help='Configuration file path (default: config.json)'
    )

    parser.add_argument(
        '--port', '-p',
        type=int,
        default=None,
        help='Override the game port to listen on'
    )

    parser.add_argument(
        '--create-config',
        action='store_true',
        help='Create an example configuration file'
    )

    parser.add_argument(
        '--validate-config',
        action='store_true',
        help='Validate the configuration file and environment'
    )

    parser.add_argument(
        '--status',
        action='store_true',
        help='Show current proxy status'
    )

    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'Wake Proxy {__version__}'
    )

    args = parser.parse_args()

    if args.create_config:
        create_example_config(args.config + '.example')
        return 0

    if args.validate_config:
        return validate_config(args.config)

    if args.status:
        return show_status(args.config)

    try:
        return asyncio.run(main_service(args))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 0


if __name__ == '__main__':
    sys.exit(main())
