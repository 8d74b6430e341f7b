#!/usr/bin/env python3
"""
PoSe Guard CLI

Operator command-line interface for the verification core.

Usage:
    poseguard <command> [subcommand] [options]

Commands:
    config      Configuration management
    replay      Cross-chain envelope replay protection
    receipt     Receipt fingerprints and verification

Exit codes:
    0   success / accepted
    1   error (bad input, configuration, I/O)
    2   rejected (a verdict with ok = false)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from poseguard import __version__
from poseguard.config import ConfigError, get_config_manager
from poseguard.hardening import ValidationError, ValidationErrors
from poseguard.observability import PoseLayer, configure_logging, get_logger

logger = get_logger("main", PoseLayer.CLI)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_REJECTED = 2


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = EXIT_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False).rstrip()
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _load_json(path: str, schema: Optional[str] = None) -> Dict[str, Any]:
    """Read a JSON document, optionally validating it against a named schema."""
    from poseguard.schema import validate_with_schema

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise CLIError(f"Cannot read {path}: {e}") from e
    except ValueError as e:
        raise CLIError(f"Invalid JSON in {path}: {e}") from e

    if schema:
        errors = validate_with_schema(data, schema)
        if errors:
            raise CLIError(f"{path} is not a valid {schema}: {'; '.join(errors)}")
    return data


class PoseCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="poseguard",
            description="Proof-of-service receipt verification and replay protection",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"poseguard {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file (default: ./poseguard.yaml if present)",
        )
        self.parser.add_argument(
            "--log-level",
            choices=["debug", "info", "warning", "error"],
            help="Override observability.log_level",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages on stderr",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_config_commands()
        self._register_replay_commands()
        self._register_receipt_commands()

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config get
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., nonce.ttl_ms)")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def _register_replay_commands(self) -> None:
        """Register replay subcommands."""
        replay = self.subparsers.add_parser("replay", help="Cross-chain replay protection")
        replay_sub = replay.add_subparsers(dest="subcommand")

        # replay key
        key = replay_sub.add_parser("key", help="Compute an envelope's replay key")
        key.add_argument("envelope", help="Envelope JSON file")

        # replay check
        check = replay_sub.add_parser("check", help="Validate an envelope without committing")
        check.add_argument("envelope", help="Envelope JSON file")
        check.add_argument("--state", "-s", help="Snapshot path (default: replay.persistence_path)")

        # replay accept
        accept = replay_sub.add_parser(
            "accept",
            help="Validate and commit an envelope (serialized across processes via <state>.lock)",
        )
        accept.add_argument("envelope", help="Envelope JSON file")
        accept.add_argument("--state", "-s", help="Snapshot path (default: replay.persistence_path)")

        # replay inspect
        inspect = replay_sub.add_parser("inspect", help="Summarize a snapshot")
        inspect.add_argument("--state", "-s", help="Snapshot path (default: replay.persistence_path)")
        inspect.add_argument("--full", action="store_true", help="Include every channel and replay key")

    def _register_receipt_commands(self) -> None:
        """Register receipt subcommands."""
        receipt = self.subparsers.add_parser("receipt", help="Receipt operations")
        receipt_sub = receipt.add_subparsers(dest="subcommand")

        # receipt hash
        hash_cmd = receipt_sub.add_parser("hash", help="Compute responseBodyHash")
        hash_cmd.add_argument("receipt", help="Receipt JSON file")

        # receipt verify
        verify = receipt_sub.add_parser("verify", help="Verify a challenge/receipt pair")
        verify.add_argument("--challenge", required=True, help="Challenge JSON file")
        verify.add_argument("--receipt", required=True, help="Receipt JSON file")
        verify.add_argument(
            "--key", "-k",
            action="append",
            default=[],
            help="Trusted Ed25519 public key, 64 hex chars (repeatable)",
        )

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_OK

        try:
            self._setup(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            if isinstance(result, dict):
                if result.get("ok") is False:
                    return EXIT_REJECTED
                if result.get("valid") is False:
                    return EXIT_ERROR
            return EXIT_OK

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ConfigError, ValidationError, ValidationErrors) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR

    def _setup(self, args: argparse.Namespace) -> None:
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        obs = mgr.config.observability
        configure_logging(args.log_level or obs.log_level.get(), obs.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        logger.debug(f"Dispatching {cmd} {subcmd or ''}", operation=handler_name)
        return handler(args)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return mgr.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        errors = mgr.validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return mgr.export_schema()

    # Replay handlers
    def _state_path(self, args: argparse.Namespace) -> Optional[str]:
        config = get_config_manager().config
        return getattr(args, "state", None) or config.replay.persistence_path.get() or None

    def _replay_guard(self, args: argparse.Namespace):
        from poseguard.hardening import Digest
        from poseguard.replay import ReplayGuard

        config = get_config_manager().config
        return ReplayGuard(
            persistence_path=self._state_path(args),
            durability=config.replay.durability.get(),
            digest=Digest(config.digest.algorithm.get()),
        )

    def _envelope(self, path: str):
        from poseguard.messages import CrossLayerEnvelope
        return CrossLayerEnvelope.from_dict(_load_json(path, "envelope"))

    def _handle_replay_key(self, args: argparse.Namespace) -> Any:
        from poseguard.hardening import Digest
        from poseguard.replay import build_replay_key

        envelope = self._envelope(args.envelope)
        digest = Digest(get_config_manager().get("digest.algorithm"))
        return {
            "channelKey": envelope.channel_key,
            "replayKey": build_replay_key(envelope, digest),
            "digest": digest.algorithm,
        }

    def _handle_replay_check(self, args: argparse.Namespace) -> Any:
        envelope = self._envelope(args.envelope)
        return self._replay_guard(args).validate(envelope).to_dict()

    def _handle_replay_accept(self, args: argparse.Namespace) -> Any:
        from poseguard.hardening import exclusive_file_lock
        from poseguard.replay import Durability

        envelope = self._envelope(args.envelope)
        state = self._state_path(args)
        if state is None:
            raise CLIError("replay accept needs --state or replay.persistence_path")
        # Concurrent invocations on one state file would otherwise each load,
        # commit and rename, and the last writer drops the other's commit.
        with exclusive_file_lock(state):
            guard = self._replay_guard(args)
            check = guard.check_and_commit(envelope)
            if check.ok and guard.durability is Durability.DEFERRED and not guard.flush():
                raise CLIError(f"Envelope accepted but snapshot write failed: {guard.persistence_path}")
        result = check.to_dict()
        result["committed"] = check.ok
        return result

    def _handle_replay_inspect(self, args: argparse.Namespace) -> Any:
        guard = self._replay_guard(args)
        snapshot = guard.snapshot()
        if args.full:
            return snapshot
        return {
            "path": str(guard.persistence_path) if guard.persistence_path else None,
            "version": snapshot["version"],
            "channels": len(snapshot["lastNonceByChannel"]),
            "replayKeys": guard.replay_key_count,
        }

    # Receipt handlers
    def _handle_receipt_hash(self, args: argparse.Namespace) -> Any:
        from poseguard.canonical import response_body_hash
        from poseguard.hardening import Digest
        from poseguard.messages import ReceiptMessage

        receipt = ReceiptMessage.from_dict(_load_json(args.receipt, "receipt"))
        digest = Digest(get_config_manager().get("digest.algorithm"))
        return {
            "challengeId": receipt.challenge_id,
            "responseBodyHash": response_body_hash(receipt.response_body, digest),
        }

    def _handle_receipt_verify(self, args: argparse.Namespace) -> Any:
        from poseguard.hardening import Digest
        from poseguard.messages import ChallengeMessage, ReceiptMessage
        from poseguard.signing import KeyRing
        from poseguard.verifier import ReceiptVerifier
        from poseguard.witness import build_standard_predicates

        config = get_config_manager().config
        challenge = ChallengeMessage.from_dict(_load_json(args.challenge, "challenge"))
        receipt = ReceiptMessage.from_dict(_load_json(args.receipt, "receipt"))

        digest = Digest(config.digest.algorithm.get())
        keyring = KeyRing(digest)
        for key in args.key:
            keyring.register(key)

        verifier = ReceiptVerifier.from_config(config, build_standard_predicates(keyring, digest))
        return verifier.verify(challenge, receipt).to_dict()


def main() -> int:
    """CLI entry point."""
    cli = PoseCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
