"""
Command line entry point for the ensemble copilot.

``copilot serve`` runs the development HTTP surface over the local
collaborator stack. The remaining commands are one-shot: each wires a
fresh local runtime, does one thing and shuts it down again.
"""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import click
import uvicorn
import yaml

from copilot.lib.config import ConfigurationError, CopilotConfig, initialize_config
from copilot.lib.logging_config import get_audit_logger, setup_logging
from copilot.lib.metrics import initialize_metrics
from copilot.lib.observability import get_meter, initialize_telemetry, shutdown_telemetry
from copilot.local import build_local_runtime
from copilot.models.policy_decision import AutonomyMode
from copilot.services.copilot_runtime import CopilotRuntime, InvalidRequestError
from copilot.services.ensemble_orchestrator import EnsembleExhaustedError
from copilot.services.http_server import create_app


logger = logging.getLogger("copilot.cli")

OUTPUT_FORMATS = click.Choice(['json', 'yaml', 'text'])
AUTONOMY_MODES = click.Choice([m.value for m in AutonomyMode])


class CopilotServer:
    """Long-running server process: logging, telemetry, runtime and uvicorn."""

    def __init__(self, config: CopilotConfig):
        self.config = config
        self.audit_logger = get_audit_logger()

    @asynccontextmanager
    async def running_runtime(self) -> AsyncIterator[CopilotRuntime]:
        """Bring up observability and the runtime, tearing both down on exit."""
        setup_logging(self.config.logging.model_dump())
        initialize_telemetry(self.config.observability)

        try:
            runtime = await build_local_runtime(
                self.config,
                metrics_collector=initialize_metrics(get_meter())
            )
        except Exception as e:
            self.audit_logger.log_system_event("startup", "failed", {"error": str(e)})
            shutdown_telemetry()
            raise

        self.audit_logger.log_system_event("startup", "success", {
            "config_path": self.config.config_file_path,
            "default_autonomy_mode": self.config.session.default_autonomy_mode.value,
            "hard_deny_tools": self.config.policy.hard_deny_tools
        })

        try:
            yield runtime
        finally:
            await runtime.shutdown()
            shutdown_telemetry()
            self.audit_logger.log_system_event("shutdown", "success")

    async def serve(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        settings = self.config.server
        host = host or settings.host
        port = port or settings.port

        async with self.running_runtime() as runtime:
            # uvicorn owns SIGINT/SIGTERM and drains in-flight requests before returning
            server = uvicorn.Server(uvicorn.Config(
                app=create_app(runtime, settings),
                host=host,
                port=port,
                timeout_keep_alive=settings.request_timeout,
                log_config=None,
                access_log=False
            ))
            logger.info(f"Serving copilot on http://{host}:{port}")
            await server.serve()


def _emit(data: Dict[str, Any], output_format: str) -> None:
    if output_format == 'json':
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def _load_config(ctx: click.Context) -> CopilotConfig:
    return initialize_config(ctx.obj.get('config_path')).get_config()


def _with_runtime(ctx: click.Context, action: Callable[[CopilotRuntime], Awaitable[Any]]) -> Any:
    """Run one coroutine against a freshly wired local runtime."""
    config = _load_config(ctx)

    async def _run() -> Any:
        runtime = await build_local_runtime(config)
        try:
            return await action(runtime)
        finally:
            await runtime.shutdown()

    return asyncio.run(_run())


@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """Ensemble copilot CLI."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)


@cli.command()
@click.option('--host', default=None, help='Host to bind to (defaults to configuration)')
@click.option('--port', default=None, type=int, help='Port to bind to (defaults to configuration)')
@click.pass_context
def serve(ctx, host, port):
    """Start the development HTTP server."""
    try:
        asyncio.run(CopilotServer(_load_config(ctx)).serve(host=host, port=port))
    except KeyboardInterrupt:
        logger.info("Server stopped")
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception("Server terminated with an error")
        click.echo(f"Error running server: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx):
    """Check the configuration file and report warnings."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()
        # raises on persona mapping errors the schema cannot see
        config.ensemble.to_ensemble_config()
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error validating configuration: {e}", err=True)
        sys.exit(1)

    click.echo("Configuration validation completed successfully!")
    click.echo(f"Configuration file: {config.config_file_path}")
    click.echo(f"Default autonomy mode: {config.session.default_autonomy_mode.value}")
    click.echo(f"Hard-denied tools: {len(config.policy.hard_deny_tools)}")
    click.echo(f"Full-auto allow-list: {len(config.policy.full_auto_allow_list)}")

    if warnings:
        click.echo("\nWarnings:")
        for warning in warnings:
            click.echo(f"  - {warning}")
    else:
        click.echo("\nNo warnings found.")


@cli.command()
@click.argument('autonomy_mode', type=AUTONOMY_MODES)
@click.option('--background', is_flag=True, help='Evaluate as a background invocation')
@click.option('--output-format', '-f', type=OUTPUT_FORMATS, default='text', help='Output format')
@click.pass_context
def capabilities(ctx, autonomy_mode, background, output_format):
    """Show which tools run, wait or are blocked under an autonomy mode."""

    async def _describe(runtime: CopilotRuntime) -> Dict[str, Any]:
        return runtime.describe_capabilities(autonomy_mode, is_background=background)

    try:
        result = _with_runtime(ctx, _describe)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    if output_format != 'text':
        _emit(result, output_format)
        return

    suffix = " (background)" if result['is_background'] else ""
    click.echo(f"Autonomy mode: {result['autonomy_mode']}{suffix}")
    for decision in ("allow", "hold", "deny"):
        tools = result['tools'][decision]
        click.echo(f"\n{decision.upper()} ({len(tools)}):")
        for tool_name in tools:
            click.echo(f"  - {tool_name}")


@cli.command()
@click.argument('message')
@click.option('--autonomy-mode', '-m', type=AUTONOMY_MODES, help='Autonomy mode override')
@click.option('--project-id', '-p', help='Project scope')
@click.option('--background', is_flag=True, help='Run as a background invocation')
@click.option('--output-format', '-f', type=OUTPUT_FORMATS, default='text', help='Output format')
@click.pass_context
def invoke(ctx, message, autonomy_mode, project_id, background, output_format):
    """Run one turn against the local canned collaborators."""
    request = {
        "input": message,
        "autonomy_mode": autonomy_mode,
        "project_id": project_id,
        "is_background": background
    }

    async def _turn(runtime: CopilotRuntime) -> Dict[str, Any]:
        response = await runtime.invoke(request)
        return response.model_dump(mode="json")

    try:
        result = _with_runtime(ctx, _turn)
    except InvalidRequestError as e:
        click.echo(f"Invalid request: {e}", err=True)
        sys.exit(2)
    except EnsembleExhaustedError as e:
        click.echo(f"No persona could respond: {e}", err=True)
        sys.exit(1)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    if output_format != 'text':
        _emit(result, output_format)
        return

    click.echo(f"Session: {result['session_id']}")
    click.echo(f"Mode: {result['mode']}")
    click.echo(f"Personas: {', '.join(result['cited_personas'])}")
    click.echo(f"\n{result['text']}\n")

    for record in result['executed']:
        click.echo(f"  executed {record['tool_name']} ({record['outcome']})")
    for draft in result['held']:
        click.echo(f"  held {draft['tool_call']['tool_name']} [draft {draft['draft_id']}]: {draft['reason']}")
    for attempt in result['denied']:
        click.echo(f"  denied {attempt['tool_name']}: {attempt['reason']}")


@cli.command()
@click.option('--output-format', '-f', type=OUTPUT_FORMATS, default='text', help='Output format')
@click.pass_context
def health(ctx, output_format):
    """Probe the collaborators of the local stack."""

    async def _probe(runtime: CopilotRuntime) -> Dict[str, Any]:
        report = await runtime.health()
        return report.model_dump(mode="json")

    try:
        result = _with_runtime(ctx, _probe)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    if output_format != 'text':
        _emit(result, output_format)
        return

    click.echo(f"Status: {result['status']} (version {result['version']})")
    for name, collaborator in result['collaborators'].items():
        state = "ok" if collaborator['reachable'] else f"unreachable ({collaborator.get('detail')})"
        click.echo(f"  {name}: {state}")


if __name__ == '__main__':
    cli()
