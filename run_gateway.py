"""
run_gateway.py — submit one prompt through the completion gateway.

Streams text to stdout as it arrives; Ctrl+C cancels the request and
prints whatever partial text was received. Logs go to stderr.

Usage:
    python run_gateway.py --backend cursor --model sonnet-4.5 "What is 2+2?"
    python run_gateway.py --backend gemini --no-stream "Hello"
    python run_gateway.py --status
    python run_gateway.py --list-models
    python run_gateway.py --probe gemini-2.5-flash gemini-3-flash-preview
"""

import argparse
import asyncio
import json
import signal
import sys

from promptgate.core.config import settings, validate_settings_for_production
from promptgate.core.logging import setup_logging
from promptgate.core.sentry import init_sentry
from promptgate.gateway.cancellation import CancellationToken
from promptgate.gateway.errors import CredentialUnavailable, TerminalBackendFailure
from promptgate.gateway.gateway import CompletionGateway
from promptgate.gateway.model_catalog import ModelProbe, ModelStatus, list_models
from promptgate.gateway.types import BackendKind, SandboxMode


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Submit a prompt to a completion backend")
    parser.add_argument("prompt", nargs="?", default="", help="prompt text (read from stdin when omitted)")
    parser.add_argument("--backend", choices=[b.value for b in BackendKind], default=BackendKind.CURSOR.value)
    parser.add_argument("--model", default="")
    parser.add_argument("--workspace", default="")
    parser.add_argument("--resume", default="", help="session id to resume")
    parser.add_argument("--force", action="store_true", help="auto-approve tool use")
    parser.add_argument("--sandbox", choices=[m.value for m in SandboxMode], default=None)
    parser.add_argument("--no-stream", action="store_true", help="wait for a single aggregate response")
    parser.add_argument("--status", action="store_true", help="print gateway status and exit")
    parser.add_argument("--list-models", action="store_true", help="list streaming-backend models and exit")
    parser.add_argument(
        "--probe",
        nargs="*",
        metavar="MODEL",
        default=None,
        help="send a test prompt to each model (all listed models when none given) and exit",
    )
    return parser.parse_args(argv)


async def main(argv=None):
    args = parse_args(argv)
    setup_logging()
    init_sentry()
    validate_settings_for_production()

    gateway = CompletionGateway()

    if args.status:
        print(json.dumps(await gateway.get_status(), indent=2))
        return 0

    if args.list_models:
        for model in await list_models():
            streaming = "stream" if model.supports_streaming else "      "
            print(f"{model.name:40s} {streaming}  {model.display_name}")
        return 0

    if args.probe is not None:
        return await probe_models(gateway, args.probe, args.model)

    prompt = args.prompt or sys.stdin.read()
    if not prompt.strip():
        print("Empty prompt", file=sys.stderr)
        return 2

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")

    def on_chunk(text):
        sys.stdout.write(text)
        sys.stdout.flush()

    options = {
        "backend": args.backend,
        "model": args.model,
        "workspace_dir": args.workspace,
        "resume_session_id": args.resume,
        "force_approve": args.force,
        "sandbox_mode": args.sandbox,
        "streaming": not args.no_stream,
    }

    try:
        response = await gateway.submit(prompt, options, cancel_token=token, on_chunk=on_chunk)
    except CredentialUnavailable as e:
        print(f"\n{e.message}\n{e.remediation}", file=sys.stderr)
        return 1
    except TerminalBackendFailure as e:
        print(f"\n{e.message}", file=sys.stderr)
        if e.diagnostic and settings.app_debug:
            print(e.diagnostic, file=sys.stderr)
        return 1
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    if args.no_stream:
        print(response.text)
    else:
        print()
    print(json.dumps({k: v for k, v in response.to_dict().items() if k != "text"}, indent=2), file=sys.stderr)
    return 0 if response.stop_reason.value == "success" else 1


async def probe_models(gateway, models, preferred=""):
    if not models:
        models = [m.name for m in await list_models() if m.supports_streaming]

    probe = ModelProbe(gateway)
    report = await probe.probe_all(models)
    for result in report.results:
        if result.status is ModelStatus.WORKING:
            print(f"  OK   {result.model} ({result.duration_ms}ms)")
        else:
            print(f"  FAIL {result.model}: {result.error}")

    print(f"\n{len(report.working_models)}/{len(report.results)} models working")
    if preferred:
        print(f"Best available for {preferred}: {probe.best_available(preferred, gateway.policy.chain_for(preferred))}")
    return 0 if report.working_models else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
