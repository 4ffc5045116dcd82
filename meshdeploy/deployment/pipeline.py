"""
Pipeline Reporter.

Tells the CodePipeline job that invoked a deployment how it went.
"""

import logging
from typing import Any, Optional

from .. import aws

logger = logging.getLogger(__name__)

MAX_FAILURE_MESSAGE = 5000


class PipelineReporter:
    """Signals success or failure for one CodePipeline job."""

    def __init__(self, codepipeline: Any, job_id: str):
        self.codepipeline = codepipeline
        self.job_id = job_id

    async def succeeded(self, summary: Optional[str] = None) -> None:
        kwargs = {"jobId": self.job_id}
        if summary:
            kwargs["executionDetails"] = {"summary": summary[:2048]}
        logger.info(f"Reporting success for pipeline job {self.job_id}")
        await aws.call(self.codepipeline, "put_job_success_result", **kwargs)

    async def failed(self, error: BaseException, execution_id: Optional[str] = None) -> None:
        details = {
            "type": "JobFailed",
            "message": (str(error) or type(error).__name__)[:MAX_FAILURE_MESSAGE],
        }
        if execution_id:
            details["externalExecutionId"] = execution_id
        logger.info(f"Reporting failure for pipeline job {self.job_id}")
        await aws.call(
            self.codepipeline, "put_job_failure_result",
            jobId=self.job_id,
            failureDetails=details,
        )
