"""node_provision: prepare a registered node to host sites."""

from src.jobs.entities import Job, JobType
from src.jobs.execution import NODE_PROVISION_FAILED, NODE_PROVISION_TIMEOUT, ExecutionError
from src.jobs.payloads import NodeProvisionPayload, parse_payload
from src.nodes.service import NodeService
from src.runner.ansible import PlaybookRunner
from src.store.database import Database

from .base import PlaybookJobHandler, log_stage


class NodeProvisionHandler(PlaybookJobHandler):
    job_type = JobType.NODE_PROVISION.value
    playbook = "node-provision"

    def __init__(self, database: Database, runner: PlaybookRunner, nodes: NodeService):
        super().__init__(database, runner)
        self.nodes = nodes

    def handle(self, job: Job) -> None:
        payload = parse_payload(job, NodeProvisionPayload)
        node = self.load_node(payload.node_id)
        log_stage(job, "start", node_id=node.node_id, hostname=node.hostname)

        try:
            self.run_playbook(node, {"node_id": node.node_id, "hostname": node.hostname})
        except Exception as e:
            timed_out = isinstance(e, ExecutionError) and e.is_timeout
            self.record_failure(
                job,
                e,
                lambda code, message: self.nodes.mark_provision_failed(
                    job.job_id,
                    node.node_id,
                    NODE_PROVISION_TIMEOUT if timed_out else NODE_PROVISION_FAILED,
                    message,
                ),
                node_id=node.node_id,
            )
            raise

        self.nodes.mark_provision_succeeded(job.job_id, node.node_id)
        log_stage(job, "succeeded", node_id=node.node_id)
