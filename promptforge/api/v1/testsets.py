"""Test sets — CRUD, variable sync, execution and results."""

from fastapi import APIRouter, Depends, Query, Request, Response, status

from promptforge.core.dependencies import get_service
from promptforge.core.rate_limit import limiter
from promptforge.schemas.test_set import (
    BatchStartResponse,
    BatchStatusResponse,
    BulkDeleteRequest,
    RunBatchRequest,
    RunTestRequest,
    TestCaseImport,
    TestCaseMessagesUpdate,
    TestCaseValuesUpdate,
    TestSetCreate,
    TestSetRename,
    UIStateUpdate,
    VariableDiffResponse,
    VariableNamesRequest,
    VariableSyncResponse,
)
from promptforge.testsets.service import TestSetService

router = APIRouter(prefix="/test-sets", tags=["test-sets"])


# ── Test sets ───────────────────────────────────────────────────


@router.get("/")
async def list_test_sets(
    project_uid: str | None = Query(None, description="Only test sets of this project"),
    service: TestSetService = Depends(get_service),
):
    return [ts.to_dict() for ts in service.list_test_sets(project_uid)]


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_test_set(body: TestSetCreate, service: TestSetService = Depends(get_service)):
    test_set = await service.create_test_set(body.name, body.associated_project_uid)
    return test_set.to_dict()


@router.get("/unique-name")
async def unique_test_set_name(
    project_uid: str,
    base_name: str = Query("Test Set"),
    service: TestSetService = Depends(get_service),
):
    return {"name": service.generate_unique_name(base_name, project_uid)}


@router.get("/{uid}")
async def get_test_set(uid: str, service: TestSetService = Depends(get_service)):
    return service.get_test_set(uid).to_dict()


@router.patch("/{uid}")
async def rename_test_set(uid: str, body: TestSetRename, service: TestSetService = Depends(get_service)):
    return (await service.rename_test_set(uid, body.name)).to_dict()


@router.delete("/{uid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_test_set(uid: str, service: TestSetService = Depends(get_service)):
    await service.delete_test_set(uid)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{uid}/ui-state")
async def update_ui_state(uid: str, body: UIStateUpdate, service: TestSetService = Depends(get_service)):
    return (await service.update_ui_state(uid, body.selected_comparison_version)).to_dict()


# ── Test cases ──────────────────────────────────────────────────


@router.post("/{uid}/cases", status_code=status.HTTP_201_CREATED)
async def add_test_case(uid: str, service: TestSetService = Depends(get_service)):
    return (await service.add_test_case(uid)).to_dict()


@router.post("/{uid}/cases/import", status_code=status.HTTP_201_CREATED)
async def import_test_cases(uid: str, body: TestCaseImport, service: TestSetService = Depends(get_service)):
    records = [
        {"variableValues": c.variable_values, "messages": [m.model_dump() for m in c.messages]} for c in body.cases
    ]
    return (await service.import_test_cases(uid, records)).to_dict()


@router.post("/{uid}/cases/bulk-delete")
async def bulk_delete_test_cases(uid: str, body: BulkDeleteRequest, service: TestSetService = Depends(get_service)):
    return (await service.bulk_delete_test_cases(uid, body.case_ids)).to_dict()


@router.post("/{uid}/cases/{case_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_test_case(uid: str, case_id: str, service: TestSetService = Depends(get_service)):
    return (await service.duplicate_test_case(uid, case_id)).to_dict()


@router.put("/{uid}/cases/{case_id}/values")
async def update_test_case(
    uid: str, case_id: str, body: TestCaseValuesUpdate, service: TestSetService = Depends(get_service)
):
    return (await service.update_test_case(uid, case_id, body.variable_values)).to_dict()


@router.put("/{uid}/cases/{case_id}/messages")
async def update_test_case_messages(
    uid: str, case_id: str, body: TestCaseMessagesUpdate, service: TestSetService = Depends(get_service)
):
    messages = [m.model_dump() for m in body.messages]
    return (await service.update_test_case_messages(uid, case_id, messages)).to_dict()


@router.delete("/{uid}/cases/{case_id}")
async def delete_test_case(uid: str, case_id: str, service: TestSetService = Depends(get_service)):
    return (await service.delete_test_case(uid, case_id)).to_dict()


# ── Variables ───────────────────────────────────────────────────


@router.post("/{uid}/variables/diff", response_model=VariableDiffResponse)
async def variable_diff(uid: str, body: VariableNamesRequest, service: TestSetService = Depends(get_service)):
    diff = service.detect_variable_differences(uid, body.variable_names)
    return VariableDiffResponse(
        additions=diff.additions,
        removals=diff.removals,
        conflicts=[c.to_dict() for c in diff.conflicts],
    )


@router.post("/{uid}/variables/sync", response_model=VariableSyncResponse)
async def synchronize_variables(uid: str, body: VariableNamesRequest, service: TestSetService = Depends(get_service)):
    result = await service.synchronize_variables(uid, body.variable_names)
    return VariableSyncResponse(
        test_set=result.updated_test_set.to_dict(),
        conflicts=[c.to_dict() for c in result.conflicts],
    )


@router.post("/{uid}/variables/validate")
async def validate_variables(uid: str, body: VariableNamesRequest, service: TestSetService = Depends(get_service)):
    service.validate_synchronization(uid, body.variable_names)
    return {"aligned": True}


# ── Execution ───────────────────────────────────────────────────


@router.post("/{uid}/cases/{case_id}/run")
@limiter.limit("60/minute")
async def run_single_test(
    request: Request,
    uid: str,
    case_id: str,
    body: RunTestRequest,
    service: TestSetService = Depends(get_service),
):
    """Run one case and wait for its terminal result."""
    result = await service.run_single_test(uid, case_id, body.version.to_version(), body.version_identifier)
    return result.to_dict()


@router.post("/{uid}/run", status_code=status.HTTP_202_ACCEPTED, response_model=BatchStartResponse)
@limiter.limit("10/minute")
async def start_batch(
    request: Request,
    uid: str,
    body: RunBatchRequest,
    service: TestSetService = Depends(get_service),
):
    """Start a batch in the background. Poll /status for progress."""
    version = body.version.to_version()
    await service.start_batch(uid, version, body.version_identifier, body.selection)
    return BatchStartResponse(
        test_set_uid=uid,
        version_identifier=body.version_identifier or version.default_identifier,
        selection=body.selection,
    )


@router.post("/{uid}/cancel")
async def cancel_batch(uid: str, service: TestSetService = Depends(get_service)):
    service.get_test_set(uid)
    return {"cancelled": service.cancel_batch_execution(uid)}


@router.get("/{uid}/status", response_model=BatchStatusResponse)
async def batch_status(uid: str, service: TestSetService = Depends(get_service)):
    service.get_test_set(uid)
    progress = service.batch_progress(uid)
    report = service.last_batch_report(uid)
    return BatchStatusResponse(
        test_set_uid=uid,
        running=service.is_batch_running(uid),
        progress=progress.to_dict() if progress else None,
        last_report=report.to_dict() if report else None,
    )


# ── Results ─────────────────────────────────────────────────────


@router.get("/{uid}/statistics")
async def get_statistics(
    uid: str,
    version_identifier: str | None = Query(None),
    service: TestSetService = Depends(get_service),
):
    return service.get_statistics(uid, version_identifier).to_dict()


@router.get("/{uid}/history")
async def get_result_history(
    uid: str,
    case_id: str | None = Query(None),
    version_identifier: str | None = Query(None),
    service: TestSetService = Depends(get_service),
):
    return [
        {"caseId": e.case_id, "versionIdentifier": e.version_identifier, **e.result.to_dict()}
        for e in service.get_result_history(uid, case_id, version_identifier)
    ]


@router.delete("/{uid}/cases/{case_id}/results/{version_identifier}")
async def clear_test_result(
    uid: str, case_id: str, version_identifier: str, service: TestSetService = Depends(get_service)
):
    return (await service.clear_test_result(uid, case_id, version_identifier)).to_dict()
