"""
tests/test_auth.py
Access tokens and the principal's capability checks.
"""

import uuid

import pytest
from jose import JWTError, jwt

from config.settings import settings
from shared.middleware.auth import Principal, UserRole
from shared.utils.security import create_access_token, verify_access_token


def test_token_round_trip():
    user_id = uuid.uuid4()
    hospital_id = uuid.uuid4()
    token, jti = create_access_token(
        str(user_id), UserRole.HOSPITAL_AUTHORITY.value, email="ops@city-hospital.in",
        extra={"hospital_id": str(hospital_id)},
    )

    principal = Principal(verify_access_token(token))

    assert principal.user_id == user_id
    assert principal.role == UserRole.HOSPITAL_AUTHORITY
    assert principal.session_id == jti
    assert principal.hospital_id == hospital_id
    assert principal.actor == f"hospital_authority:{user_id}"


def test_expired_token_rejected():
    token, _ = create_access_token(str(uuid.uuid4()), "patient", expires_minutes=-1)

    with pytest.raises(JWTError):
        verify_access_token(token)


def test_non_access_token_rejected():
    token = jwt.encode(
        {"sub": str(uuid.uuid4()), "role": "patient", "type": "refresh"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(JWTError):
        verify_access_token(token)


def test_capabilities():
    hospital_id = uuid.uuid4()
    patient = Principal({"sub": str(uuid.uuid4()), "role": "patient"})
    authority = Principal({"sub": str(uuid.uuid4()), "role": "hospital_authority", "hospital_id": str(hospital_id)})
    admin = Principal({"sub": str(uuid.uuid4()), "role": "admin"})

    assert patient.owns(patient.user_id)
    assert not patient.can_manage_hospital(hospital_id)
    assert authority.can_manage_hospital(hospital_id)
    assert not authority.can_manage_hospital(uuid.uuid4())
    assert admin.can_manage_hospital(uuid.uuid4())
