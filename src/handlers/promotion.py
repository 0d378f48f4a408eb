"""drift_check and env_promote handlers."""

import json

from src.jobs.entities import Job, JobType
from src.jobs.payloads import DriftCheckPayload, EnvPromotePayload, parse_payload
from src.promotion.service import PromotionService
from src.releases.service import release_path
from src.runner.ansible import PlaybookRunner
from src.store.database import Database

from .base import PlaybookJobHandler, log_stage


def parse_drift_checksums(output: str) -> tuple[dict, dict]:
    """
    Checksums reported by drift-check.yml.

    The playbook ends its output with a JSON object such as
    {"db_checksums": {...}, "file_checksums": {...}}. Output without one
    yields two empty maps.
    """
    text = (output or "").rstrip()
    if not text.endswith("}"):
        return {}, {}

    start = text.rfind("\n{")
    candidate = text[start + 1:] if start >= 0 else text
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return {}, {}
    if not isinstance(data, dict):
        return {}, {}

    db_checksums = data.get("db_checksums")
    file_checksums = data.get("file_checksums")
    return (
        db_checksums if isinstance(db_checksums, dict) else {},
        file_checksums if isinstance(file_checksums, dict) else {},
    )


class PromotionJobHandler(PlaybookJobHandler):
    def __init__(self, database: Database, runner: PlaybookRunner, promotion: PromotionService):
        super().__init__(database, runner)
        self.promotion = promotion


class DriftCheckHandler(PromotionJobHandler):
    job_type = JobType.DRIFT_CHECK.value
    playbook = "drift-check"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, DriftCheckPayload)
        environment, node = self.load_environment(payload.environment_id)
        log_stage(job, "start", environment_id=environment.environment_id, drift_check_id=payload.drift_check_id)

        try:
            result = self.run_playbook(node, {
                "environment_id": environment.environment_id,
                "drift_check_id": payload.drift_check_id,
                "promotion_preset": payload.promotion_preset,
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.promotion.mark_drift_check_failed(
                    job.job_id, payload.drift_check_id, environment.environment_id, code, message
                ),
                environment_id=environment.environment_id,
            )
            raise

        db_checksums, file_checksums = parse_drift_checksums(result.output)
        self.promotion.mark_drift_check_succeeded(
            job.job_id, payload.drift_check_id, db_checksums, file_checksums
        )
        log_stage(
            job,
            "succeeded",
            environment_id=environment.environment_id,
            db_tables=len(db_checksums),
            files=len(file_checksums),
        )


class EnvPromoteHandler(PromotionJobHandler):
    job_type = JobType.ENV_PROMOTE.value
    playbook = "env-promote"

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, EnvPromotePayload)
        target, node = self.load_environment(payload.target_environment_id)
        log_stage(
            job,
            "start",
            source_environment_id=payload.source_environment_id,
            target_environment_id=target.environment_id,
            release_id=payload.release_id,
        )

        try:
            self.run_playbook(node, {
                "source_environment_id": payload.source_environment_id,
                "target_environment_id": target.environment_id,
                "promotion_preset": payload.promotion_preset,
                "drift_check_id": payload.drift_check_id,
                "pre_promote_backup_id": payload.pre_promote_backup_id,
                "release_id": payload.release_id,
                "release_path": release_path(target.environment_id, payload.release_id),
            })
        except Exception as e:
            self.record_failure(
                job,
                e,
                lambda code, message: self.promotion.mark_promote_failed(
                    job.job_id, target.environment_id, code, message
                ),
                target_environment_id=target.environment_id,
            )
            raise

        self.promotion.mark_promote_succeeded(job.job_id, target.environment_id, payload.release_id)
        log_stage(job, "succeeded", target_environment_id=target.environment_id, release_id=payload.release_id)
