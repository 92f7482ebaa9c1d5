"""
Command Line Interface for the MODUS cluster
"""
import asyncio
import json
import sys
from typing import Optional
import click

from modus_cluster.core.config import Config, CoordinatorConfig, LoggingConfig, WorkerConfig
from modus_cluster.core.errors import ClusterError, ConfigurationError
from modus_cluster.core.lifecycle import ClusterController, ClusterHandle
from modus_cluster.transport.direct import HttpDirectControl
from modus_cluster.transport.udp import UdpMessageBus
from modus_cluster.utils.logger import setup_logging
from modus_cluster.worker.agent import WorkerAgent
from modus_cluster.worker.control_server import WorkerControlServer
from modus_cluster.worker.handlers import default_handlers


def load_config(config_file: Optional[str]) -> Config:
    if config_file:
        return Config.load_from_file(config_file)
    return Config.from_env()


@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, config, verbose):
    """MODUS cluster CLI"""
    try:
        main_config = load_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    log_config = main_config.logging
    setup_logging('DEBUG' if verbose else log_config.level, log_config.file, log_config.format)

    ctx.ensure_object(dict)
    ctx.obj['config'] = main_config


async def interactive_loop(handle: ClusterHandle):
    """Read operator commands until quit/exit or end of input"""
    loop = asyncio.get_running_loop()
    click.echo("Commands: status, call <role> <operation> [json], quit")
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        parts = line.strip().split(maxsplit=3)
        if not parts:
            continue
        command = parts[0].lower()

        if command in ('quit', 'exit'):
            break
        elif command == 'status':
            click.echo(handle.report())
        elif command == 'call':
            if len(parts) < 3:
                click.echo("Usage: call <role> <operation> [json]")
                continue
            try:
                payload = json.loads(parts[3]) if len(parts) > 3 else None
            except json.JSONDecodeError as e:
                click.echo(f"Invalid JSON payload: {e}")
                continue
            try:
                result = await handle.call(parts[1], parts[2], payload)
                click.echo(json.dumps(result, indent=2))
            except ClusterError as e:
                click.echo(f"Call failed: {e}", err=True)
        else:
            click.echo(f"Unknown command: {command}")


@cli.command()
@click.option('--host', default=None, help='Host to bind the bus to')
@click.option('--port', default=None, type=int, help='UDP bus port')
@click.option('--bootstrap', type=click.Path(exists=True, dir_okay=False), help='Listener file pushed to attached workers')
@click.option('--config-file', help='Save configuration to file')
@click.pass_context
def start_coordinator(ctx, host, port, bootstrap, config_file):
    """Start the cluster coordinator"""
    main_config: Config = ctx.obj['config']
    config = main_config.coordinator or CoordinatorConfig()
    if host is not None:
        config = config.model_copy(update={'host': host})
    if port is not None:
        config = config.model_copy(update={'port': port})

    if config_file:
        Config(coordinator=config, logging=main_config.logging).save_to_file(config_file)
        click.echo(f"Configuration saved to {config_file}")

    payload = None
    if bootstrap:
        with open(bootstrap, 'rb') as f:
            payload = f.read()

    async def run():
        direct = HttpDirectControl(config.direct_endpoints()) if config.known_nodes else None
        bus = UdpMessageBus(
            config.coordinator_id,
            host=config.host,
            port=config.port,
            broadcast_address=config.broadcast_address,
            direct=direct,
        )
        async with bus:
            controller = ClusterController(bus, config, payload)
            handle = await controller.start_cluster()
            click.echo(handle.report())
            async with handle:
                await interactive_loop(handle)

    click.echo(f"Starting coordinator '{config.coordinator_id}' on {config.host}:{config.port}")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nShutting down coordinator...")
    except ClusterError as e:
        click.echo(f"Cluster error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--node-id', default=None, help='Unique node identifier')
@click.option('--host', default=None, help='Host to bind the bus to')
@click.option('--port', default=None, type=int, help='UDP bus port')
@click.option('--control-port', default=None, type=int, help='HTTP control port')
@click.option('--storage-dir', default=None, help='Directory for deployed files')
@click.option('--role', 'roles', multiple=True, help='Role this worker can take (can be specified multiple times)')
@click.pass_context
def start_worker(ctx, node_id, host, port, control_port, storage_dir, roles):
    """Start a worker node"""
    main_config: Config = ctx.obj['config']
    config = main_config.worker or WorkerConfig(node_id=node_id or 'worker_1')
    overrides = {
        'node_id': node_id,
        'host': host,
        'port': port,
        'control_port': control_port,
        'storage_dir': storage_dir,
        'roles': list(roles) if roles else None,
    }
    config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    async def run():
        bus = UdpMessageBus(
            config.node_id,
            host=config.host,
            port=config.port,
            broadcast_address=config.broadcast_address,
        )
        async with bus:
            agent = WorkerAgent(
                bus,
                default_handlers(config.roles, config.node_id),
                config.storage_dir,
                protocols=config.protocols,
                poll_interval=config.receive_poll_interval,
            )
            server = None
            if config.control_port:
                server = WorkerControlServer(agent, config.host, config.control_port)
                await server.start()
            try:
                await agent.serve()
            finally:
                if server is not None:
                    await server.stop()

    click.echo(f"Starting worker '{config.node_id}' on {config.host}:{config.port}")
    click.echo(f"Roles: {', '.join(config.roles)}")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo(f"\nShutting down worker '{config.node_id}'...")
    except ClusterError as e:
        click.echo(f"Worker error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option('--output', '-o', default='modus_config.json', help='Output configuration file')
@click.pass_context
def init_config(ctx, output):
    """Initialize a configuration file with default settings"""
    config = Config(
        coordinator=CoordinatorConfig(),
        worker=WorkerConfig(node_id="worker_1"),
        logging=LoggingConfig(),
    )

    config.save_to_file(output)
    click.echo(f"Configuration file created: {output}")
    click.echo("Edit the file to customize settings, then use:")
    click.echo(f"  modus-cluster -c {output} start-coordinator")
    click.echo(f"  modus-cluster -c {output} start-worker")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
