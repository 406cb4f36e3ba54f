"""
tests/test_status.py
Verification status summary and its routes.
"""

import uuid

import pytest
from httpx import AsyncClient

from services.verification.engine import VerificationEngine, overall_document_status
from shared.errors import NotFoundError
from shared.models.models import DocumentType, User
from tests.conftest import auth_headers, make_evidence


@pytest.mark.parametrize(
    "pending, verified, rejected, expected",
    [
        (0, 0, 0, "not_verified"),
        (2, 0, 0, "pending"),
        (1, 1, 0, "pending"),
        (0, 2, 0, "verified"),
        (0, 0, 1, "rejected"),
        (0, 1, 1, "partially_verified"),
    ],
)
def test_overall_document_status(pending, verified, rejected, expected):
    assert overall_document_status(pending, verified, rejected) == expected


@pytest.mark.asyncio
async def test_status_reflects_documents(engine: VerificationEngine, student: User, admin_user: User):
    identity = (await engine.submit_document(student.id, DocumentType.STUDENT_ID, make_evidence())).value
    await engine.submit_document(student.id, DocumentType.UTILITY_BILL, make_evidence())
    await engine.decide_document(admin_user.id, identity.id, "verified")

    result = await engine.get_verification_status(student.id)

    status = result.value
    assert status["identity"] is True
    assert status["address"] is False
    assert status["overall"] == "pending"
    assert status["counts"] == {"total": 2, "pending": 1, "verified": 1, "rejected": 0}
    assert status["verification_state"].value == "verified_student"
    assert status["is_fully_verified"] is False


@pytest.mark.asyncio
async def test_status_unknown_subject(engine: VerificationEngine):
    result = await engine.get_verification_status(uuid.uuid4())
    assert isinstance(result.error, NotFoundError)


@pytest.mark.asyncio
async def test_status_routes(client: AsyncClient, student: User, admin_user: User):
    response = await client.get("/verification/status", headers=auth_headers(student))
    assert response.status_code == 200
    body = response.json()
    assert body["verification_state"] == "unverified"
    assert body["overall"] == "not_verified"
    assert body["counts"]["total"] == 0

    response = await client.get(
        f"/verification/admin/status/{student.id}", headers=auth_headers(admin_user)
    )
    assert response.status_code == 200
    assert response.json()["subject_id"] == str(student.id)

    response = await client.get(
        f"/verification/admin/status/{student.id}", headers=auth_headers(student)
    )
    assert response.status_code == 403

    response = await client.get(
        f"/verification/admin/status/{uuid.uuid4()}", headers=auth_headers(admin_user)
    )
    assert response.status_code == 404
