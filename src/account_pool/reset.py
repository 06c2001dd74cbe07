"""
Reset job: sanitize one account and return it to the pool.

Runs inside the reset build started by the queue drain, configured through
the RESET_* environment variables.
"""

import logging
from typing import Optional

from account_pool.cleanup import run_pre_nuke_tasks
from account_pool.errors import ValidationError
from account_pool.nuke import generate_nuke_config, nuke_account
from account_pool.retry import retry
from account_pool.services import ServiceContext

logger = logging.getLogger(__name__)

NUKE_ATTEMPTS = 3


def run_reset(ctx: ServiceContext, now: Optional[int] = None, output_dir: str = "/tmp") -> None:
    """Nuke the configured account, then unlock its leases and mark it Ready."""
    s = ctx.settings
    account_id = s.reset_account_id
    if not account_id or not s.reset_admin_role_name:
        raise ValidationError(
            "reset", "RESET_ACCOUNT and RESET_ACCOUNT_ADMIN_ROLE_NAME must be set"
        )

    if not s.nuke_enabled:
        logger.info(
            "Nuke is in dry run mode and will not remove any resources. "
            "Set RESET_NUKE_TOGGLE=true to nuke for real."
        )

    # 1. Render the nuke config
    config_path = generate_nuke_config(
        account_id,
        admin_role=s.reset_admin_role_name,
        principal_role=s.reset_principal_role_name or "",
        principal_policy=s.reset_principal_policy_name or "",
        storage=ctx.storage,
        template_bucket=s.nuke_template_bucket,
        template_key=s.nuke_template_key,
        template_default=s.nuke_template_default,
        output_dir=output_dir,
    )

    # 2. Clear resources aws-nuke trips over
    if s.nuke_enabled:
        admin_arn = f"arn:aws:iam::{account_id}:role/{s.reset_admin_role_name}"
        session = ctx.token_service.assume_role(admin_arn, f"AccountPoolReset{account_id}")
        run_pre_nuke_tasks(session, s.nuke_regions)

    # 3. Nuke, retrying runs that leave resources behind
    retry(
        lambda: nuke_account(
            account_id,
            s.reset_admin_role_name,
            config_path,
            no_dry_run=s.nuke_enabled,
            token_service=ctx.token_service,
            runner=ctx.nuke_runner,
            timeout=s.nuke_timeout_seconds,
        ),
        attempts=NUKE_ATTEMPTS,
    )
    logger.info("%s : Nuke Success", account_id)

    # 4. Back to the pool
    ctx.account_service().complete_reset(account_id, now)
    logger.info("%s : Reset complete", account_id)
