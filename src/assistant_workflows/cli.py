"""
Assistant Workflow Runtime CLI
"""
import click
import asyncio
import json
import logging
from datetime import datetime

from dotenv import load_dotenv

from .config import Settings
from .core import WorkflowEngine, WorkflowParser, CronExpression
from .exceptions import WorkflowEngineError
from .models.base import utcnow


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
def cli(log_level):
    """Assistant Workflow Runtime CLI"""
    load_dotenv()
    logging.basicConfig(
        level=(log_level or Settings.from_env().log_level).upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
def serve(host, port, reload):
    """Start the API server"""
    import uvicorn

    settings = Settings.from_env()
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "assistant_workflows.api.app:app",
        host=host,
        port=port,
        reload=reload or settings.api_reload
    )


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow definition file"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        click.echo(f"Invalid workflow: {e}", err=True)
        for error in getattr(e, "errors", []) or []:
            click.echo(f"  - {error}", err=True)
        raise SystemExit(1)

    click.echo(f"Workflow '{workflow.name}' is valid ({len(workflow.steps)} steps)")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--payload', default=None, help='Trigger payload as a JSON object')
@click.option('--timeout', default=60.0, type=float, help='Seconds to wait for completion')
def run(workflow_file, payload, timeout):
    """Run a workflow from file with in-memory storage"""
    try:
        trigger_payload = json.loads(payload) if payload else None
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"payload is not valid JSON: {e}")

    async def _run():
        engine = WorkflowEngine()
        try:
            workflow_id = await engine.create_workflow(WorkflowParser().parse_file(workflow_file))
            click.echo(f"Created workflow: {workflow_id}")

            execution_id = await engine.execute_workflow(workflow_id, trigger_payload)
            click.echo(f"Started execution: {execution_id}")

            return await engine.wait_for_execution(execution_id, timeout=timeout)
        finally:
            await engine.shutdown()

    try:
        execution = asyncio.run(_run())
    except WorkflowEngineError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    for record in execution.step_records:
        line = f"  {record.step_id}: {record.status.value} ({record.attempts} attempt(s))"
        if record.error:
            line += f" - {record.error}"
        click.echo(line)

    click.echo(f"Execution {execution.id} finished with status {execution.status.value}")
    if execution.output:
        click.echo(json.dumps(execution.output, indent=2, default=str, ensure_ascii=False))
    if execution.error:
        click.echo(f"Error: {execution.error}", err=True)

    raise SystemExit(0 if execution.status.value == "COMPLETED" else 1)


@cli.command(name='next-run')
@click.argument('expression')
@click.option('-n', '--count', default=5, help='Number of upcoming run times')
@click.option('--after', default=None, help='ISO start time (defaults to now, UTC)')
@click.option('--timezone', 'tz', default=None, help='IANA timezone for the expression')
def next_run(expression, count, after, tz):
    """Print upcoming run times of a cron expression"""
    try:
        cron = CronExpression(expression)
        current = datetime.fromisoformat(after) if after else utcnow()
        for _ in range(count):
            current = cron.next_after(current, tz)
            click.echo(current.isoformat())
    except (WorkflowEngineError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
