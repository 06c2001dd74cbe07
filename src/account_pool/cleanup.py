"""
Pre-nuke cleanup for resources aws-nuke cannot remove on its own.

RDS automated backups outlive their instance unless retention is dropped to
zero first, and Athena workgroups holding queries need a recursive delete.
"""

import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from account_pool.errors import InternalServerError

logger = logging.getLogger(__name__)

ATHENA_PRIMARY_WORKGROUP = "primary"


def delete_rds_backups(session: Any, region: str) -> None:
    """Turn off backup retention on every DB instance and delete its automated backups."""
    rds = session.client("rds", region_name=region)
    try:
        paginator = rds.get_paginator("describe_db_instances")
        for page in paginator.paginate():
            for db in page.get("DBInstances", []):
                db_id = db["DBInstanceIdentifier"]
                rds.modify_db_instance(
                    DBInstanceIdentifier=db_id,
                    BackupRetentionPeriod=0,
                    ApplyImmediately=True,
                )
                logger.info("Disabled backups for RDS instance %s in %s", db_id, region)

                backups = rds.describe_db_instance_automated_backups(
                    DbiResourceId=db["DbiResourceId"]
                )
                for backup in backups.get("DBInstanceAutomatedBackups", []):
                    try:
                        rds.delete_db_instance_automated_backup(
                            DbiResourceId=backup["DbiResourceId"]
                        )
                    except (BotoCoreError, ClientError) as e:
                        logger.warning("Could not delete automated backup for %s: %s", db_id, e)
    except (BotoCoreError, ClientError) as e:
        raise InternalServerError(f"RDS cleanup failed in {region}: {e}", e) from e


def delete_athena_resources(session: Any, region: str) -> None:
    """Delete every non-primary Athena workgroup (recursively) and every named query."""
    athena = session.client("athena", region_name=region)
    try:
        kwargs: dict[str, Any] = {"MaxResults": 50}
        while True:
            response = athena.list_work_groups(**kwargs)
            for work_group in response.get("WorkGroups", []):
                name = work_group["Name"]
                if name == ATHENA_PRIMARY_WORKGROUP:
                    continue
                athena.delete_work_group(WorkGroup=name, RecursiveDeleteOption=True)
                logger.info("Deleted Athena workgroup %s in %s", name, region)
            if not response.get("NextToken"):
                break
            kwargs["NextToken"] = response["NextToken"]

        paginator = athena.get_paginator("list_named_queries")
        for page in paginator.paginate():
            for query_id in page.get("NamedQueryIds", []):
                athena.delete_named_query(NamedQueryId=query_id)
                logger.info("Deleted Athena named query %s in %s", query_id, region)
    except (BotoCoreError, ClientError) as e:
        raise InternalServerError(f"Athena cleanup failed in {region}: {e}", e) from e


def run_pre_nuke_tasks(session: Any, regions: list[str]) -> None:
    for region in regions:
        delete_rds_backups(session, region)
        delete_athena_resources(session, region)
