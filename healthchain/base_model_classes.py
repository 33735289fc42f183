from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

# -------------------------
# Pydantic models (API)
# -------------------------

class PatientIn(BaseModel):
    full_name: str = Field(..., description="Full name of the patient")
    dob: date = Field(..., description="Date of birth")
    gender: Optional[str] = Field(None, description="male, female, other")
    blood_group: Optional[str] = Field(None, description="e.g. 'O+', 'AB-'")
    contact_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[Dict[str, Any]] = Field(
        None, description="Name, relation and phone of the emergency contact"
    )
    wallet_address: Optional[str] = Field(None, description="Patient's ledger address (0x...)")


class DoctorIn(BaseModel):
    full_name: str
    specialization: Optional[str] = None
    qualification: Optional[str] = None
    license_number: Optional[str] = Field(None, description="Medical license number (unique)")
    contact_number: Optional[str] = None
    email: Optional[str] = None
    hospital_id: Optional[str] = Field(None, description="Hospital the doctor works at")
    years_of_experience: Optional[int] = Field(None, ge=0)
    wallet_address: Optional[str] = None


class HospitalIn(BaseModel):
    name: str
    type: Optional[str] = Field(None, description="government, private, clinic, ...")
    registration_number: Optional[str] = Field(None, description="Registration number (unique)")
    contact_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    wallet_address: Optional[str] = None


ENTITY_SCHEMAS = {
    "patient": PatientIn,
    "doctor": DoctorIn,
    "hospital": HospitalIn,
}


# partial updates: same field types, nothing required, unknown fields rejected
class PatientUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = None
    dob: Optional[date] = None
    gender: Optional[str] = None
    blood_group: Optional[str] = None
    contact_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[Dict[str, Any]] = None
    wallet_address: Optional[str] = None


class DoctorUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = None
    specialization: Optional[str] = None
    qualification: Optional[str] = None
    license_number: Optional[str] = None
    contact_number: Optional[str] = None
    email: Optional[str] = None
    hospital_id: Optional[str] = None
    years_of_experience: Optional[int] = Field(None, ge=0)
    wallet_address: Optional[str] = None


class HospitalUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    type: Optional[str] = None
    registration_number: Optional[str] = None
    contact_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    wallet_address: Optional[str] = None


ENTITY_UPDATE_SCHEMAS = {
    "patient": PatientUpdateIn,
    "doctor": DoctorUpdateIn,
    "hospital": HospitalUpdateIn,
}


class RegisterIn(BaseModel):
    role: str = Field(..., description="patient, doctor or hospital")
    email: str
    password: str = Field(..., min_length=6)
    profile: Dict[str, Any] = Field(
        default_factory=dict, description="Role specific fields, validated against the role's schema"
    )


class LoginIn(BaseModel):
    email: str
    password: str


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class UserProfileUpdateIn(BaseModel):
    email: Optional[str] = None
    wallet_address: Optional[str] = None


class ConsentGrantIn(BaseModel):
    patient_address: str = Field(..., description="Patient id or wallet address granting access")
    grantee_address: str = Field(..., description="Wallet address of the doctor or hospital")
    scope: str = Field("medical_records", description="Data scope, e.g. 'medical_records'")
    duration_days: int = Field(..., description="Validity of the grant in days (> 0)")


class ConsentRevokeIn(BaseModel):
    patient_address: str
    grantee_address: str
    scope: str = "medical_records"


class RelationshipIn(BaseModel):
    patient_id: str
    doctor_id: str
    hospital_id: str
    relationship_type: Optional[str] = Field(
        None, description="primary_care (default), specialist, consultant, emergency"
    )
    notes: Optional[str] = None


class RelationshipNotesIn(BaseModel):
    notes: str = ""


class MedicalRecordIn(BaseModel):
    patient_id: str
    doctor_id: str
    hospital_id: str
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    prescription: Optional[str] = None
    notes: Optional[str] = None
    consent_scope: Optional[str] = None
    access_level: Optional[str] = Field(None, description="private (default), patient, doctor, hospital, public")
    is_critical: bool = False


class MedicalRecordUpdateIn(BaseModel):
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    prescription: Optional[str] = None
    notes: Optional[str] = None
    consent_scope: Optional[str] = None
    access_level: Optional[str] = None
    is_critical: Optional[bool] = None


class ReportBody(BaseModel):
    report_type: Optional[str] = Field(None, description="blood_test, x_ray, ... (default 'other')")
    title: str
    description: Optional[str] = None
    test_date: Optional[datetime] = None
    report_data: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    is_critical: bool = False
    critical_values: Optional[List[Dict[str, Any]]] = None
    access_level: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    report_file_url: Optional[str] = None
    report_file_name: Optional[str] = None


class ReportIn(ReportBody):
    patient_id: str
    doctor_id: str
    hospital_id: str
    medical_record_id: Optional[str] = None


class ReportUpdateIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    report_data: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    findings: Optional[str] = None
    recommendations: Optional[str] = None
    status: Optional[str] = Field(None, description="pending, in_progress, completed, reviewed, archived")
    is_critical: Optional[bool] = None
    critical_values: Optional[List[Dict[str, Any]]] = None
    access_level: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    report_file_url: Optional[str] = None
    report_file_name: Optional[str] = None


class ReviewIn(BaseModel):
    review_notes: Optional[str] = None


class CriticalIn(BaseModel):
    critical_values: List[Dict[str, Any]] = Field(default_factory=list)


class PayoutIn(BaseModel):
    patient_address: str = Field(..., description="Wallet address of the rewarded patient")
    rule_id: str = Field(..., description="Identifier of the incentive rule")
    amount: Optional[float] = Field(None, ge=0)
