"""
Clinic Workflow Automation CLI
"""
import click
import asyncio
import json
import yaml
from pathlib import Path

from .config import EngineSettings, configure_logging
from .core.parser import WorkflowParser
from .exceptions import WorkflowValidationError, WorkflowParseError
from .runtime import create_engine


EXAMPLE_WORKFLOW = {
    "workflow": {
        "name": "Post-treatment follow-up",
        "trigger": "appointment_completed",
        "enabled": True,
        "steps": [
            {
                "id": "thank_you",
                "type": "send_sms",
                "config": {"message": "Hi {{first_name}}, thanks for visiting {{business_name}}!"}
            },
            {"id": "wait", "type": "delay", "config": {"value": 3, "unit": "days"}},
            {
                "id": "review",
                "type": "send_email",
                "config": {
                    "subject": "How was your visit?",
                    "body": "We'd love a review: {{google_review_link}}"
                }
            },
            {"id": "tag", "type": "add_tag", "config": {"tag": "followed_up"}, "next_step_id": None}
        ]
    }
}


def _settings(ctx: click.Context) -> EngineSettings:
    return ctx.obj["settings"]


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True), help='YAML settings file')
@click.option('--log-level', default=None, help='Override LOG_LEVEL')
@click.pass_context
def cli(ctx, config_path, log_level):
    """Clinic Workflow Automation CLI"""
    settings = EngineSettings.from_env()
    if config_path:
        settings = EngineSettings.from_yaml(config_path, base=settings)
    if log_level:
        settings = settings.merge({"log_level": log_level.upper()})

    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload (settings come from the environment)')
@click.pass_context
def serve(ctx, host, port, reload):
    """Start the admin API server with the scheduler loop"""
    import uvicorn
    from .api import create_app

    settings = _settings(ctx)
    host = host or settings.api_host
    port = port or settings.api_port

    click.echo(f"Starting API server on {host}:{port}")
    if reload:
        uvicorn.run(
            "clinic_automation.api:create_app",
            factory=True,
            host=host,
            port=port,
            reload=True
        )
    else:
        uvicorn.run(create_app(settings), host=host, port=port)


@cli.command()
@click.pass_context
def scheduler(ctx):
    """Run the scheduler loop without the API"""
    settings = _settings(ctx)

    async def _run():
        engine, db_manager = await create_engine(settings)
        try:
            await engine.scheduler.run_forever()
        finally:
            await engine.stop()
            await db_manager.close()

    click.echo(f"Scheduler running every {settings.tick_interval_seconds}s (Ctrl+C to stop)")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")


@cli.command()
@click.pass_context
def tick(ctx):
    """Run a single scheduler tick and print its summary"""
    settings = _settings(ctx)

    async def _run():
        engine, db_manager = await create_engine(settings)
        try:
            return await engine.tick()
        finally:
            await db_manager.close()

    result = asyncio.run(_run())
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--org-id', default=None, help='Owning org (required when the file has none)')
@click.pass_context
def validate(ctx, workflow_file, org_id):
    """Validate a YAML/JSON workflow definition"""
    parser = WorkflowParser(_settings(ctx).default_duplicate_prevention_days)
    try:
        workflow = parser.parse_file(Path(workflow_file), org_id)
    except WorkflowValidationError as e:
        click.echo(f"Invalid workflow: {workflow_file}", err=True)
        for error in e.errors or [str(e)]:
            click.echo(f"  - {error}", err=True)
        raise SystemExit(1)
    except WorkflowParseError as e:
        click.echo(f"Could not parse {workflow_file}: {e}", err=True)
        raise SystemExit(1)

    click.echo(
        f"OK: '{workflow.name}' (trigger {workflow.trigger}, "
        f"{len(workflow.steps)} steps, starts at '{workflow.start_step_id}')"
    )


@cli.command()
def init():
    """Create an example workflow definition"""
    Path('workflows').mkdir(exist_ok=True)

    target = Path('workflows/follow_up.yaml')
    with open(target, 'w') as f:
        yaml.safe_dump(EXAMPLE_WORKFLOW, f, sort_keys=False)

    click.echo(f"Created {target}")


def main():
    """Main entry point"""
    cli(obj={})


if __name__ == '__main__':
    main()
