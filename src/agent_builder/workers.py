"""Reference workers for the default pipeline.

They emit the deliverable records each stage is expected to produce so a
pipeline can run end to end without the real generators.
"""

from __future__ import annotations

from .invoker import InvocationContext, LocalWorkerInvoker
from .models import ArtifactDraft, ArtifactType, WorkerPayload, WorkerResult


def _step(context: InvocationContext, progress: int) -> None:
    if context.cancelled:
        raise RuntimeError(f"{context.worker_name} cancelled")
    context.report_progress(progress)


def product_manager(payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
    _step(context, 50)
    return WorkerResult(
        success=True,
        artifacts=[
            ArtifactDraft(
                artifact_type=ArtifactType.SRS_DOCUMENT,
                location=f"https://example.com/srs/{payload.project_id}.pdf",
                title="Software Requirements Specification",
                description="Detailed requirements and specifications for the project",
                metadata={"request": payload.project.request},
            )
        ],
    )


def backend_engineer(payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
    if not any(artifact.artifact_type == ArtifactType.SRS_DOCUMENT for artifact in payload.previous_artifacts):
        return WorkerResult(success=False, error_message="No SRS document available for backend generation")
    _step(context, 50)
    return WorkerResult(
        success=True,
        artifacts=[
            ArtifactDraft(
                artifact_type=ArtifactType.SOURCE_CODE,
                location=f"https://github.com/agent-builder/{payload.project_id}-backend",
                title="Backend Source Code",
                description="Backend services and data model",
            )
        ],
    )


def frontend_engineer(payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
    _step(context, 50)
    return WorkerResult(
        success=True,
        artifacts=[
            ArtifactDraft(
                artifact_type=ArtifactType.SOURCE_CODE,
                location=f"https://github.com/agent-builder/{payload.project_id}-frontend",
                title="Frontend Source Code",
                description="Web client application",
            )
        ],
    )


def devops_engineer(payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
    _step(context, 50)
    return WorkerResult(
        success=True,
        artifacts=[
            ArtifactDraft(
                artifact_type=ArtifactType.DEPLOYMENT_URL,
                location=f"https://{payload.project_id.lower()}.agent-builder.app",
                title="Live Application",
                description="Deployed application",
            ),
            ArtifactDraft(
                artifact_type=ArtifactType.TEST_REPORT,
                location=f"https://example.com/test-reports/{payload.project_id}.html",
                title="Test Report",
                description="Automated test results and quality metrics",
            ),
        ],
    )


REFERENCE_WORKERS = {
    "product_manager": product_manager,
    "backend_engineer": backend_engineer,
    "frontend_engineer": frontend_engineer,
    "devops_engineer": devops_engineer,
}


def build_reference_invoker(*, max_workers: int = 4) -> LocalWorkerInvoker:
    return LocalWorkerInvoker(REFERENCE_WORKERS, max_workers=max_workers)
