"""HTTP surface for chaosgate.

Routes:
  - POST /chaos-test   run a complete chaos test against a repository
  - GET  /health       liveness check
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError
from chaosgate.models import CHAOS_TYPES
from chaosgate.pipeline import ChaosTestPipeline


class ChaosTestRequest(BaseModel):
    """Body of ``POST /chaos-test``. Unknown fields are accepted and ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    github_url: Optional[str] = Field(default=None, alias="githubUrl")
    chaos_type: Optional[str] = Field(default=None, alias="chaosType")
    duration: Optional[int] = Field(default=None, gt=0)
    target_namespace: Optional[str] = Field(default=None, alias="targetNamespace")
    target_deployment: Optional[str] = Field(default=None, alias="targetDeployment")


def create_app(settings: Optional[Settings] = None, pipeline: Optional[ChaosTestPipeline] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Runtime settings, defaults to built-in defaults.
        pipeline: Pipeline to run tests with, built from ``settings`` when
            omitted.
    """
    settings = settings or Settings()
    app = FastAPI(title="chaosgate", description="Chaos testing for Kubernetes workloads")
    state = {"pipeline": pipeline}

    def get_pipeline() -> ChaosTestPipeline:
        if state["pipeline"] is None:
            state["pipeline"] = ChaosTestPipeline(settings)
        return state["pipeline"]

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/chaos-test")
    def chaos_test(request: ChaosTestRequest):
        if not request.github_url:
            return JSONResponse(
                status_code=400,
                content={"success": False, "error": "githubUrl is required"},
            )
        if request.chaos_type and request.chaos_type not in CHAOS_TYPES:
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "error": f"Unknown chaosType '{request.chaos_type}'",
                    "validChaosTypes": list(CHAOS_TYPES),
                },
            )

        print(f"Starting chaos test for {request.github_url}")
        try:
            report = get_pipeline().run(
                github_url=request.github_url,
                chaos_type=request.chaos_type,
                duration=request.duration,
                target_namespace=request.target_namespace,
                target_deployment=request.target_deployment,
            )
        except FatalSetupError as e:
            print(f"Chaos test failed at {e.stage.value}: {e}")
            return JSONResponse(status_code=e.status_code, content=e.to_dict())
        return report.to_response()

    return app


def serve(settings: Settings, host: Optional[str] = None, port: Optional[int] = None):
    """Serve the HTTP surface with uvicorn."""
    import uvicorn

    uvicorn.run(create_app(settings), host=host or settings.host, port=port or settings.port)
