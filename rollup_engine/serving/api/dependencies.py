"""
Request-scoped access to the services built in the application lifespan.
"""

from fastapi import HTTPException, Request

from rollup_engine.serving.reports import ReportService


def get_report_service(request: Request) -> ReportService:
    service = getattr(request.app.state, "report_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Report service not initialized")
    return service
