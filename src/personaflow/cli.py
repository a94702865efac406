"""
personaflow CLI: browse a marketplace and run persona workflows.

Usage:
    personaflow [--marketplace DIR] [--config FILE] [-v] <command> ...

Examples:
    # List personas and slash commands of the bundled marketplace
    personaflow --marketplace marketplace personas
    personaflow --marketplace marketplace commands

    # Show the execution plan of a workflow
    personaflow --marketplace marketplace plan full_feature

    # Run a workflow with echo agents
    personaflow --marketplace marketplace run full_feature --task "Checkout flow"

    # Invoke a slash command and run its workflow
    personaflow --marketplace marketplace invoke "/full-feature checkout" --run
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from personaflow.config import default_marketplace, ensure_dotenv
from personaflow.exceptions import CommandNotFoundError, PersonaFlowError
from personaflow.workflow.graph import WorkflowGraph
from personaflow.workflow.models import RunStatus, StageStatus, WorkflowDefinition, WorkflowRun
from personaflow.workspace import Workspace

logger = logging.getLogger(__name__)

STAGE_ICONS = {
    StageStatus.COMPLETED: "✅",
    StageStatus.FAILED: "❌",
    StageStatus.SKIPPED: "⏭️ ",
    StageStatus.PENDING: "⏳",
    StageStatus.RUNNING: "⏳",
}


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s' if verbose else '%(message)s'
    )
    # Quiet down noisy loggers
    if not verbose:
        logging.getLogger("pika").setLevel(logging.WARNING)
        logging.getLogger("personaflow").setLevel(logging.WARNING)


def parse_input_params(input_args: List[str]) -> Dict[str, Any]:
    """Parse --input key=value arguments into a dictionary."""
    params = {}
    for arg in input_args:
        if "=" not in arg:
            print(f"Warning: Invalid input format '{arg}', expected key=value")
            continue
        key, value = arg.split("=", 1)
        if value.lower() == "true":
            params[key] = True
        elif value.lower() == "false":
            params[key] = False
        else:
            try:
                params[key] = int(value)
            except ValueError:
                try:
                    params[key] = float(value)
                except ValueError:
                    params[key] = value
    return params


def build_workspace(args, **kwargs) -> Workspace:
    return Workspace(
        marketplace=args.marketplace,
        orchestrator_config=args.config,
        **kwargs,
    )


# =============================================================================
# Catalog commands
# =============================================================================

def list_personas(args) -> int:
    workspace = build_workspace(args)
    personas = workspace.personas.all()

    print(f"\n👥 Personas ({len(personas)}):")
    print("=" * 50)
    if not personas:
        print("  (no personas found)")
    for persona in personas:
        print(f"  - {persona.name}: {persona.description or persona.title}")
        if args.verbose and persona.expertise:
            print(f"      expertise: {', '.join(persona.expertise)}")
    return 0


def list_commands(args) -> int:
    workspace = build_workspace(args)
    commands = workspace.commands.all()

    print(f"\n⌨️  Commands ({len(commands)}):")
    print("=" * 50)
    if not commands:
        print("  (no commands found)")
    for command in commands:
        hint = f" {command.argument_hint}" if command.argument_hint else ""
        workflow = f"  -> {command.workflow}" if command.workflow else ""
        print(f"  /{command.name}{hint}: {command.description}{workflow}")
    return 0


def list_workflows(args) -> int:
    workspace = build_workspace(args)
    names = workspace.workflow_names()

    print(f"\n📋 Workflows ({len(names)}):")
    print("=" * 50)
    if not names:
        print("  (no workflows found)")
    for name in names:
        definition = workspace.marketplace.get_workflow(name)
        print(f"  - {name} v{definition.version}: {len(definition.stages)} stages, "
              f"roles: {', '.join(definition.roles())}")
    return 0


def show_plan(args) -> int:
    workspace = build_workspace(args)
    definition = workspace.get_workflow(args.workflow)
    if definition is None:
        print(f"\n❌ Workflow not found: {args.workflow}")
        return 1

    graph = WorkflowGraph(definition)
    print(f"\n🗺️  Plan for {definition.name} v{definition.version}:")
    print("=" * 50)
    for index, wave in enumerate(graph.waves(), start=1):
        print(f"  Wave {index}:")
        for name in wave:
            stage = definition.get_stage(name)
            mode = "parallel" if stage.parallel else "sequential"
            deps = graph.dependencies(name)
            after = f" (after {', '.join(deps)})" if deps else ""
            print(f"    - {name}: {', '.join(stage.roles)} [{mode}]{after}")
    return 0


def validate_workflow(args) -> int:
    try:
        definition = WorkflowDefinition.from_yaml(args.file)
    except OSError as e:
        print(f"\n❌ Cannot read {args.file}: {e}")
        return 1
    except PersonaFlowError as e:
        print(f"\n❌ {e}")
        return 1

    print(f"\n✅ {definition.name} v{definition.version} is valid "
          f"({len(definition.stages)} stages, {len(WorkflowGraph(definition).waves())} waves)")
    return 0


# =============================================================================
# Run commands
# =============================================================================

def print_run(run: WorkflowRun, verbose: bool = False) -> None:
    print("\n" + "=" * 50)
    for name, result in run.stage_results.items():
        icon = STAGE_ICONS.get(result.status, "•")
        attempts = f" ({result.attempts} attempts)" if result.attempts > 1 else ""
        print(f"  {icon} {name}: {result.status.value}{attempts}")
        for role, error in result.role_errors.items():
            print(f"       {role}: {error}")
        if verbose:
            for role, output in result.outputs.items():
                print(f"       {role}: {output.get('summary', '')[:100]}")

    decisions = run.context.get("decisions", [])
    if decisions:
        print("\n🧭 Decisions:")
        for decision in decisions:
            print(f"  - {decision['topic']}: {decision['choice']} "
                  f"({', '.join(decision['made_by'])}, {decision['resolved_via']})")

    open_issues = [i for i in run.context.get("issues", []) if i.get("status") == "open"]
    if open_issues:
        print("\n⚠️  Open issues:")
        for issue in open_issues:
            print(f"  - {issue['id']} [{issue['severity']}] {issue['title']}")

    print()
    if run.status == RunStatus.COMPLETED:
        print(f"✅ Run completed ({run.duration_seconds():.2f}s)  id={run.id}")
    elif run.status == RunStatus.CANCELLED:
        print(f"⏹️  Run cancelled  id={run.id}")
    else:
        print(f"❌ Run failed: {run.error}  id={run.id}")


def run_workflow(args) -> int:
    workspace = build_workspace(args, agents_file=args.agents, db_path=args.db)
    try:
        definition = workspace.get_workflow(args.workflow)
        if definition is None:
            print(f"\n❌ Workflow not found: {args.workflow}")
            print("   Use 'workflows' to see available workflows")
            return 1

        inputs = parse_input_params(args.input or [])
        print(f"\n🚀 Running {definition.name}: {args.task}")
        print(f"   Input: {inputs or '(none)'}")

        run = workspace.run_workflow(definition, task=args.task, inputs=inputs)
        print_run(run, args.verbose)
        if args.json:
            print(json.dumps(run.model_dump(mode="json"), indent=2))
        return 0 if run.status == RunStatus.COMPLETED else 1
    finally:
        workspace.close()


def resume_run(args) -> int:
    workspace = build_workspace(args, agents_file=args.agents, db_path=args.db)
    try:
        run = workspace.store.get_run(args.run_id)
        if run is None:
            print(f"\n❌ Run not found: {args.run_id}")
            return 1
        definition = workspace.get_workflow(args.workflow or run.workflow_name)
        if definition is None:
            print(f"\n❌ Workflow not found: {args.workflow or run.workflow_name}")
            return 1

        print(f"\n🔁 Resuming {run.workflow_name} ({run.id})")
        run = workspace.orchestrator.resume(run.id, definition)
        print_run(run, args.verbose)
        return 0 if run.status == RunStatus.COMPLETED else 1
    finally:
        workspace.close()


def list_runs(args) -> int:
    workspace = build_workspace(args, db_path=args.db)
    try:
        runs = workspace.store.list_runs(workflow=args.workflow, status=args.status, limit=args.limit)
        print(f"\n🗂️  Runs ({len(runs)}):")
        print("=" * 50)
        for run in runs:
            print(f"  {run.id}  {run.workflow_name:<20} {run.status.value:<10} "
                  f"{run.task.get('title', '')}")
        return 0
    finally:
        workspace.close()


def invoke_command(args) -> int:
    workspace = build_workspace(args, agents_file=args.agents, db_path=args.db)
    try:
        try:
            invocation = workspace.commands.invoke(args.line)
        except CommandNotFoundError as e:
            print(f"\n❌ {e}")
            print("   Use 'commands' to see available commands")
            return 1

        print(f"\n⌨️  /{invocation.command} {' '.join(invocation.arguments)}")
        print("=" * 50)
        print(invocation.prompt)

        if not args.run:
            return 0
        run = workspace.run_invocation(invocation)
        print_run(run, args.verbose)
        return 0 if run.status == RunStatus.COMPLETED else 1
    finally:
        workspace.close()


def serve(args) -> int:
    import uvicorn

    from personaflow.api_gateway.gateway import APIGateway, create_app

    workspace = build_workspace(args, agents_file=args.agents, db_path=args.db)
    gateway = APIGateway(workspace=workspace)
    host = args.host or gateway.config["host"]
    port = args.port or gateway.config["port"]
    print(f"\n🌐 Serving personaflow API on http://{host}:{port}")
    uvicorn.run(create_app(gateway), host=host, port=port)
    return 0


# =============================================================================
# Main
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="personaflow",
        description="personaflow CLI - run persona workflows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --marketplace marketplace personas
  %(prog)s --marketplace marketplace plan full_feature
  %(prog)s --marketplace marketplace run full_feature --task "Checkout flow"
  %(prog)s --marketplace marketplace invoke "/full-feature checkout" --run
        """
    )
    parser.add_argument("--marketplace", "-m", default=None,
                        help="Marketplace directory (default: $PERSONAFLOW_MARKETPLACE)")
    parser.add_argument("--config", "-c", default=None, help="Orchestrator config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("personas", help="List personas")
    subparsers.add_parser("commands", help="List slash commands")
    subparsers.add_parser("workflows", help="List workflows")

    plan_parser = subparsers.add_parser("plan", help="Show the stage waves of a workflow")
    plan_parser.add_argument("workflow", help="Workflow name or YAML path")

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow YAML file")
    validate_parser.add_argument("file", help="Workflow YAML path")

    run_parser = subparsers.add_parser("run", help="Run a workflow")
    run_parser.add_argument("workflow", help="Workflow name or YAML path")
    run_parser.add_argument("--task", "-t", required=True, help="Task title")
    run_parser.add_argument("--input", "-i", action="append", help="Input parameters (key=value)")
    run_parser.add_argument("--agents", "-a", help="Agents file (default: echo agents)")
    run_parser.add_argument("--db", help="SQLite run store for checkpoints")
    run_parser.add_argument("--json", action="store_true", help="Print the full run as JSON")

    resume_parser = subparsers.add_parser("resume", help="Resume a stored run")
    resume_parser.add_argument("run_id", help="Run ID")
    resume_parser.add_argument("--db", required=True, help="SQLite run store")
    resume_parser.add_argument("--workflow", "-w", help="Workflow name or YAML path (default: the run's)")
    resume_parser.add_argument("--agents", "-a", help="Agents file (default: echo agents)")

    runs_parser = subparsers.add_parser("runs", help="List stored runs")
    runs_parser.add_argument("--db", required=True, help="SQLite run store")
    runs_parser.add_argument("--workflow", "-w", help="Only runs of this workflow")
    runs_parser.add_argument("--status", choices=[s.value for s in RunStatus], help="Only runs with this status")
    runs_parser.add_argument("--limit", type=int, default=20)

    invoke_parser = subparsers.add_parser("invoke", help="Invoke a slash command")
    invoke_parser.add_argument("line", help="Command line, e.g. '/full-feature checkout'")
    invoke_parser.add_argument("--run", action="store_true", help="Run the bound workflow")
    invoke_parser.add_argument("--agents", "-a", help="Agents file (default: echo agents)")
    invoke_parser.add_argument("--db", help="SQLite run store for checkpoints")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--agents", "-a", help="Agents file (default: echo agents)")
    serve_parser.add_argument("--db", default=".data/runs.db", help="SQLite run store")

    return parser


COMMANDS = {
    "personas": list_personas,
    "commands": list_commands,
    "workflows": list_workflows,
    "plan": show_plan,
    "validate": validate_workflow,
    "run": run_workflow,
    "resume": resume_run,
    "runs": list_runs,
    "invoke": invoke_command,
    "serve": serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    ensure_dotenv()
    if args.marketplace is None:
        args.marketplace = default_marketplace()

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        return handler(args)
    except (PersonaFlowError, ValueError) as e:
        print(f"\n❌ Error: {e}")
        if args.verbose:
            logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
