"""
Account sanitization with aws-nuke.

The nuke config is rendered from a YAML template (S3 override or the bundled
default), then aws-nuke runs as the account's admin role on a worker thread.
The caller waits at most ``timeout`` seconds for it.
"""

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from account_pool.errors import AccountPoolError, InternalServerError, NukeTimeoutError, ValidationError
from account_pool.settings import DEFAULT_NUKE_TIMEOUT_SECONDS, load_template

logger = logging.getLogger(__name__)

NUKE_FORCE_SLEEP = 5
NUKE_MAX_WAIT_RETRIES = 200


@dataclass
class NukeParams:
    account_id: str
    config_path: str
    no_dry_run: bool = False
    force: bool = True
    force_sleep: int = NUKE_FORCE_SLEEP
    max_wait_retries: int = NUKE_MAX_WAIT_RETRIES


def generate_nuke_config(
    account_id: str,
    admin_role: str,
    principal_role: str,
    principal_policy: str,
    storage: Any = None,
    template_bucket: Optional[str] = None,
    template_key: Optional[str] = None,
    template_default: str = "default-nuke-config-template.yml",
    output_dir: str = "/tmp",
) -> str:
    """Render the nuke config for ``account_id`` and return the file path."""
    if template_bucket and template_key:
        logger.info("Using nuke template s3://%s/%s", template_bucket, template_key)
        template = storage.get_object(template_bucket, template_key)
    elif os.path.isfile(template_default):
        template = Path(template_default).read_bytes()
    else:
        template = load_template(template_default).encode("utf-8")

    substitutions = {
        b"{{id}}": account_id.encode("utf-8"),
        b"{{admin_role}}": admin_role.encode("utf-8"),
        b"{{principal_role}}": principal_role.encode("utf-8"),
        b"{{principal_policy}}": principal_policy.encode("utf-8"),
    }
    for placeholder, value in substitutions.items():
        template = template.replace(placeholder, value)

    config_path = os.path.join(output_dir, f"account-pool-nuke-config-{account_id}.yml")
    Path(config_path).write_bytes(template)
    logger.info("Wrote nuke config for %s to %s", account_id, config_path)
    return config_path


def load_nuke_config(config_path: str, account_id: str) -> dict[str, Any]:
    """Parse a nuke config and check it targets ``account_id``."""
    try:
        config = yaml.safe_load(Path(config_path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError("nuke config", f"cannot read {config_path}: {e}", e) from e

    if not isinstance(config, dict):
        raise ValidationError("nuke config", f"{config_path} is not a mapping")
    accounts = config.get("accounts") or {}
    if str(account_id) not in {str(key) for key in accounts}:
        raise ValidationError("nuke config", f"{config_path} has no entry for account {account_id}")
    return config


class AwsNukeRunner:
    """Runs the aws-nuke binary with the assumed role's credentials."""

    def __init__(self, binary: str = "aws-nuke"):
        self.binary = binary

    def command(self, params: NukeParams) -> list[str]:
        cmd = [
            self.binary,
            "--config",
            params.config_path,
            "--force-sleep",
            str(params.force_sleep),
            "--max-wait-retries",
            str(params.max_wait_retries),
        ]
        if params.force:
            cmd.append("--force")
        if params.no_dry_run:
            cmd.append("--no-dry-run")
        return cmd

    def run(self, params: NukeParams, session: Any) -> None:
        creds = session.get_credentials().get_frozen_credentials()
        env = os.environ.copy()
        env["AWS_ACCESS_KEY_ID"] = creds.access_key
        env["AWS_SECRET_ACCESS_KEY"] = creds.secret_key
        if creds.token:
            env["AWS_SESSION_TOKEN"] = creds.token

        try:
            result = subprocess.run(self.command(params), env=env, capture_output=True, text=True)
        except OSError as e:
            raise InternalServerError(f"cannot run {self.binary}: {e}", e) from e

        if result.stdout:
            logger.info(result.stdout)
        if result.returncode != 0:
            raise InternalServerError(
                f"{self.binary} exited with {result.returncode}: {(result.stderr or '').strip()}"
            )


def nuke_account(
    account_id: str,
    role_name: str,
    config_path: str,
    no_dry_run: bool,
    token_service: Any,
    runner: Any,
    timeout: float = DEFAULT_NUKE_TIMEOUT_SECONDS,
) -> None:
    """Nuke ``account_id`` as ``role_name``, giving up after ``timeout`` seconds."""
    config = load_nuke_config(config_path, account_id)
    logger.info("Nuking %s in regions %s", account_id, ", ".join(str(r) for r in config.get("regions") or []))
    role_arn = f"arn:aws:iam::{account_id}:role/{role_name}"
    session = token_service.assume_role(role_arn, f"AccountPoolNuke{account_id}")

    params = NukeParams(
        account_id=account_id,
        config_path=config_path,
        no_dry_run=no_dry_run,
    )

    errors: list[BaseException] = []

    def _run():
        try:
            runner.run(params, session)
        except Exception as e:  # handed back to the waiting caller
            errors.append(e)

    worker = threading.Thread(target=_run, name=f"nuke-{account_id}", daemon=True)
    worker.start()
    worker.join(timeout)

    if worker.is_alive():
        raise NukeTimeoutError(f"Nuke Timed Out after {timeout / 60:g} minutes")
    if errors:
        error = errors[0]
        if isinstance(error, AccountPoolError):
            raise InternalServerError(
                f"failed to nuke account {account_id} as {role_name}: {error.message}", error
            ) from error
        raise InternalServerError(
            f"failed to nuke account {account_id} as {role_name}: {error}", error
        ) from error
