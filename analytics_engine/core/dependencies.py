from fastapi import Request

from analytics_engine.core.query.orchestrator import QueryOrchestrator


# The orchestrator is built once in the app lifespan and kept on app.state
def get_orchestrator(request: Request) -> QueryOrchestrator:
    return request.app.state.orchestrator
