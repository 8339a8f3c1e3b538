"""Command-line interface for Hatchway.

This module provides commands to store GitHub App credentials, check the
connection, sync managed repositories, update and roll back managed
packages, and manage backups.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from hatchway.core.app import ApplicationCore
from hatchway.updates.installer import InstallStage
from hatchway.updates.pipeline import InstallOutcome
from hatchway.utils.exceptions import HatchwayError


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_outcome(outcome: InstallOutcome, action: str) -> int:
    if outcome.success:
        print(f"{action} {outcome.repository} {outcome.version}: done")
        return 0

    stage = outcome.stage.value if isinstance(outcome.stage, InstallStage) else outcome.stage
    print(
        f"{action} {outcome.repository} {outcome.version} failed at {stage}: "
        f"[{outcome.reason}] {outcome.message}",
        file=sys.stderr,
    )
    return 1


def status_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    """Handle the status command.

    Args:
        app: Initialized application core
        args: Command-line arguments

    Returns:
        Exit code (0 when installed, non-zero otherwise)
    """
    status = app.get_connection_status(args.credential)
    if args.json:
        _print_json(status)
    else:
        print(f"Status: {status['status']}")
        print(f"  {status['message']}")
        for key, value in status["details"].items():
            print(f"  {key}: {value}")
    return 0 if status["status"] == "installed" else 1


def repos_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    repositories = app.list_managed_repositories(args.credential)
    if args.json:
        _print_json(repositories)
        return 0

    if not repositories:
        print("No managed repositories.")
    for repository in repositories:
        print(repository)

    for repository, credential_ids in app.repositories.conflicts().items():
        print(
            f"Warning: {repository} is claimed by {', '.join(credential_ids)}; "
            f"using {credential_ids[0]}",
            file=sys.stderr,
        )
    return 0


def sync_repos_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    repositories = app.sync_repositories(args.credential)
    if args.json:
        _print_json(repositories)
        return 0

    print(f"Synced {len(repositories)} repositories")
    for repository in repositories:
        print(f"  {repository}")
    return 0


def check_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    candidates = app.check_for_updates()
    if args.json:
        _print_json([candidate.__dict__ for candidate in candidates])
        return 0

    if not candidates:
        print("All managed packages are up to date.")
        return 0

    for candidate in candidates:
        print(
            f"{candidate.slug} ({candidate.repository}): "
            f"{candidate.installed_version} -> {candidate.available_version} [{candidate.channel}]"
        )
    return 0


def install_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    return _print_outcome(app.install_version(args.repository, args.version), "Install")


def rollback_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    return _print_outcome(app.rollback(args.repository, args.to), "Rollback")


def store_credentials_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    """Handle the store-credentials command.

    Only the given options are changed when ``--id`` names an existing
    record.
    """
    partial: Dict[str, Any] = {}
    if args.id:
        partial["id"] = args.id
    for option, field in (
            ("name", "name"),
            ("slug", "slug"),
            ("app_id", "signing_id"),
            ("installation_id", "installation_id"),
            ("account_type", "account_type"),
            ("org", "org_slug"),
            ("webhook_secret", "webhook_secret"),
            ("status", "status"),
    ):
        value = getattr(args, option)
        if value is not None:
            partial[field] = value
    if args.private_key_file:
        partial["private_key"] = Path(args.private_key_file).read_text(encoding="utf-8")
    if args.repo:
        partial["managed_repositories"] = args.repo

    record = app.store_credentials(partial)
    _print_json(record)
    return 0


def channel_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    if args.channel:
        try:
            channel = app.set_channel(args.repository, args.channel)
        except ValueError:
            print(f"Unknown channel: {args.channel}", file=sys.stderr)
            return 1
    else:
        channel = app.releases.get_channel(args.repository)
    print(f"{args.repository}: {channel.value}")
    return 0


def backups_command(app: ApplicationCore, args: argparse.Namespace) -> int:
    if args.restore:
        result = app.restore_backup(args.restore, args.type)
        if not result.success:
            print(
                f"Restore of {args.restore} failed at {result.failed_stage.value}: "
                f"[{result.error.code}] {result.error.message}",
                file=sys.stderr,
            )
            return 1
        version = f" {result.version}" if result.version else ""
        print(f"Restored {result.slug}{version} from {args.restore}")
        return 0

    if args.delete:
        if not app.backups.delete_backup(args.delete):
            print(f"Backup not found: {args.delete}", file=sys.stderr)
            return 1
        print(f"Deleted backup: {args.delete}")
        return 0

    backups = app.list_backups(args.slug)
    if not backups:
        print("No backups.")
    for backup in backups:
        print(f"{backup.name}  {backup.size} bytes  {backup.created_at:%Y-%m-%d %H:%M:%S}")
    return 0


COMMANDS = {
    "status": status_command,
    "repos": repos_command,
    "sync-repos": sync_repos_command,
    "check": check_command,
    "install": install_command,
    "rollback": rollback_command,
    "store-credentials": store_credentials_command,
    "channel": channel_command,
    "backups": backups_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Hatchway private package updater",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="Path to configuration file")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show the GitHub connection status")
    status_parser.add_argument("--credential", help="Credential id (defaults to the first usable one)")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    # Repos command
    repos_parser = subparsers.add_parser("repos", help="List managed repositories")
    repos_parser.add_argument("--credential", help="Only list this credential's repositories")
    repos_parser.add_argument("--json", action="store_true", help="Print JSON")

    # Sync repos command
    sync_parser = subparsers.add_parser(
        "sync-repos", help="Replace managed repositories with those the installation can access"
    )
    sync_parser.add_argument("--credential", help="Credential id (defaults to the first usable one)")
    sync_parser.add_argument("--json", action="store_true", help="Print JSON")

    # Check command
    check_parser = subparsers.add_parser("check", help="Check managed packages for updates")
    check_parser.add_argument("--json", action="store_true", help="Print JSON")

    # Install command
    install_parser = subparsers.add_parser("install", help="Install a release of a managed package")
    install_parser.add_argument("repository", help="Repository (owner/repo)")
    install_parser.add_argument("version", help="Release tag or version")

    # Rollback command
    rollback_parser = subparsers.add_parser("rollback", help="Roll a managed package back")
    rollback_parser.add_argument("repository", help="Repository (owner/repo)")
    rollback_parser.add_argument("--to", help="Version to roll back to (defaults to the previous release)")

    # Store credentials command
    creds_parser = subparsers.add_parser("store-credentials", help="Create or update app credentials")
    creds_parser.add_argument("--id", help="Existing credential id to update")
    creds_parser.add_argument("--name", help="App display name")
    creds_parser.add_argument("--slug", help="App slug on GitHub")
    creds_parser.add_argument("--app-id", type=int, help="Numeric GitHub App id")
    creds_parser.add_argument("--installation-id", type=int, help="Installation id")
    creds_parser.add_argument("--account-type", choices=["user", "organization"], help="Owner account type")
    creds_parser.add_argument("--org", help="Organization login")
    creds_parser.add_argument("--private-key-file", help="Path to the app's PEM private key")
    creds_parser.add_argument("--webhook-secret", help="Webhook secret")
    creds_parser.add_argument("--status", choices=["pending", "requires_installation", "installed", "error"],
                              help="Credential status")
    creds_parser.add_argument("--repo", action="append", default=None,
                              help="Managed repository (can be specified multiple times)")

    # Channel command
    channel_parser = subparsers.add_parser("channel", help="Show or set a repository's release channel")
    channel_parser.add_argument("repository", help="Repository (owner/repo)")
    channel_parser.add_argument("channel", nargs="?", help="stable or beta")

    # Backups command
    backups_parser = subparsers.add_parser("backups", help="List, restore or delete package backups")
    backups_parser.add_argument("--slug", help="Only list backups of this package")
    backups_parser.add_argument("--delete", help="Delete the named backup")
    backups_parser.add_argument("--restore", help="Reinstall the package from the named backup")
    backups_parser.add_argument("--type", choices=["plugin", "theme"],
                                help="Package type of the backup (detected when omitted)")

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line interface.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = build_parser()
    args = parser.parse_args(args)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    app = ApplicationCore(config_path=args.config)
    try:
        app.initialize()
        return command(app, args)
    except HatchwayError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        app.shutdown()


if __name__ == "__main__":
    sys.exit(main())
