"""
MESMTF: Medical Expert System for Malaria and Typhoid Fever
Backend: FastAPI (Python)

  - Role-based records: users, patients, appointments, diagnoses, prescriptions
  - Email & password authentication with bcrypt password hashing
  - JWT access tokens (python-jose)
  - Rule-based malaria/typhoid risk assessment, standalone and embedded in
    diagnosis creation

SETUP:
  pip install -e .
  python main.py
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional, List, Literal
import uvicorn, datetime, logging, os
import bcrypt
from jose import JWTError, jwt as jose_jwt
from dotenv import load_dotenv

import expert_system
from expert_system import LabOutcome, Severity, ValidationError
from store import open_store, now_iso

# Load .env file
load_dotenv()

# ── Config ──────────────────────────────────────────────────────────────────
JWT_SECRET = os.getenv("JWT_SECRET", "mesmtf-secret-key-change-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
DATA_DIR = os.getenv("DATA_DIR", os.getcwd())
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
SEED_DEFAULT_USERS = os.getenv("SEED_DEFAULT_USERS", "true").lower() in ("1", "true", "yes")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | [%(name)s] | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mesmtf")

STAFF = ("doctor", "nurse", "pharmacist", "receptionist", "admin")
SCHEDULERS = ("doctor", "nurse", "receptionist", "admin")
ACTIVE_APPOINTMENT_STATUSES = ("scheduled", "confirmed", "in-progress")
PRESCRIPTION_VALIDITY_DAYS = 30

Role = Literal["patient", "doctor", "nurse", "pharmacist", "receptionist", "admin"]
UserStatus = Literal["active", "inactive", "suspended"]
AppointmentType = Literal["consultation", "follow-up", "emergency", "routine-checkup"]
AppointmentStatus = Literal["scheduled", "confirmed", "in-progress", "completed", "cancelled", "no-show"]
DiagnosisStatus = Literal["active", "resolved", "chronic"]
MalariaSpecies = Literal["P. falciparum", "P. vivax", "P. ovale", "P. malariae", "mixed"]

# ── Stores ──────────────────────────────────────────────────────────────────
users_db = open_store(DATA_DIR, "users", "usr")
patients_db = open_store(DATA_DIR, "patients", "pat")
appointments_db = open_store(DATA_DIR, "appointments", "apt")
diagnoses_db = open_store(DATA_DIR, "diagnoses", "dx")
prescriptions_db = open_store(DATA_DIR, "prescriptions", "rx")
STORES = (users_db, patients_db, appointments_db, diagnoses_db, prescriptions_db)

DEFAULT_USERS = [
    {"email": "admin@hospital.com", "name": "System Administrator", "role": "admin"},
    {"email": "doctor@hospital.com", "name": "Dr. Admin", "role": "doctor"},
]
DEFAULT_PASSWORD = "password123"


def hash_password(plain: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(plain.encode('utf-8'), salt).decode('utf-8')

def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False

def create_jwt(user_id: str, email: str, role: str) -> str:
    expire = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=JWT_EXPIRE_HOURS)
    return jose_jwt.encode({"sub": user_id, "email": email, "role": role, "exp": expire}, JWT_SECRET, algorithm=JWT_ALGORITHM)

def get_user_from_token(token: str):
    try:
        payload = jose_jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    return users_db.get(payload.get("sub"))

def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password"}

def init_default_users():
    if users_db.records or not SEED_DEFAULT_USERS:
        return
    for seed in DEFAULT_USERS:
        users_db.insert({**seed, "password": hash_password(DEFAULT_PASSWORD), "status": "active", "profile": {}})
    logger.info("Seeded %d default accounts", len(DEFAULT_USERS))


# ── Dates ───────────────────────────────────────────────────────────────────
def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)

def parse_dt(value: str) -> datetime.datetime:
    return as_utc(datetime.datetime.fromisoformat(value))


# ── App Setup ───────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info("MESMTF API starting (data dir: %s)", DATA_DIR)
    for store in STORES:
        store.load()
        logger.info("Loaded %d %s", len(store.records), store.name)
    init_default_users()
    logger.info("=" * 60)

    yield

    logger.info("MESMTF API shutting down")


app = FastAPI(title="MESMTF API", version="1.0.0",
    description="Medical Expert System for Malaria and Typhoid Fever", lifespan=lifespan)

app.add_middleware(CORSMiddleware, allow_origins=CORS_ORIGINS, allow_methods=["*"], allow_headers=["*"])


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ── Auth dependencies ───────────────────────────────────────────────────────
async def get_current_user(authorization: Optional[str] = Header(None)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authorized, no token")
    user = get_user_from_token(authorization.replace("Bearer ", "", 1))
    if not user:
        logger.warning("Rejected request with invalid or expired token")
        raise HTTPException(status_code=401, detail="Not authorized, token failed")
    if user.get("status", "active") != "active":
        raise HTTPException(status_code=401, detail="Account is not active")
    return user

def require_roles(*roles: str):
    async def checker(user: dict = Depends(get_current_user)) -> dict:
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail=f"User role '{user['role']}' is not authorized to access this resource")
        return user
    return checker

def patient_record_for(user: dict) -> Optional[dict]:
    return patients_db.find_one(userId=user["id"])

def ensure_patient_access(user: dict, patient_id: Optional[str]):
    """Patients may only read records that belong to their own patient file."""
    if user["role"] != "patient":
        return
    own = patient_record_for(user)
    if not own or own["id"] != patient_id:
        raise HTTPException(status_code=403, detail="Not authorized to access this patient data")

def scope_to_user(user: dict, filters: dict) -> Optional[dict]:
    """
    Narrow list filters by role: doctors see their own records, patients see
    records for their own patient file. Returns None when nothing is visible.
    """
    if user["role"] == "doctor":
        filters["doctor"] = user["id"]
    elif user["role"] == "patient":
        own = patient_record_for(user)
        if not own:
            return None
        filters["patient"] = own["id"]
    return filters


# ── Pydantic Models ───────────────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: str
    password: str

class RegisterRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: str = Field(min_length=3, max_length=254)
    password: str
    role: Role = "patient"

class UserCreate(RegisterRequest):
    role: Role
    profile: Optional[dict] = None

class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=254)
    role: Optional[Role] = None
    profile: Optional[dict] = None

class UserStatusUpdate(BaseModel):
    status: UserStatus

class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None
    country: Optional[str] = None

class EmergencyContact(BaseModel):
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None

class MedicalHistory(BaseModel):
    allergies: List[str] = []
    chronicConditions: List[str] = []
    medications: List[str] = []
    bloodType: Optional[str] = None

class Insurance(BaseModel):
    provider: Optional[str] = None
    policyNumber: Optional[str] = None
    groupNumber: Optional[str] = None

class PatientCreate(BaseModel):
    firstName: str = Field(min_length=1, max_length=50)
    lastName: str = Field(min_length=1, max_length=50)
    dateOfBirth: datetime.date
    gender: Literal["Male", "Female", "Other"]
    phone: str = Field(min_length=5, max_length=20)
    email: Optional[str] = None
    address: Optional[Address] = None
    emergencyContact: Optional[EmergencyContact] = None
    medicalHistory: Optional[MedicalHistory] = None
    insurance: Optional[Insurance] = None
    userId: Optional[str] = None
    assignedDoctor: Optional[str] = None
    assignedNurse: Optional[str] = None
    status: Literal["active", "inactive"] = "active"

class PatientUpdate(BaseModel):
    firstName: Optional[str] = Field(None, min_length=1, max_length=50)
    lastName: Optional[str] = Field(None, min_length=1, max_length=50)
    dateOfBirth: Optional[datetime.date] = None
    gender: Optional[Literal["Male", "Female", "Other"]] = None
    phone: Optional[str] = Field(None, min_length=5, max_length=20)
    email: Optional[str] = None
    address: Optional[Address] = None
    emergencyContact: Optional[EmergencyContact] = None
    medicalHistory: Optional[MedicalHistory] = None
    insurance: Optional[Insurance] = None
    userId: Optional[str] = None
    assignedDoctor: Optional[str] = None
    assignedNurse: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None

class BloodPressure(BaseModel):
    systolic: Optional[int] = None
    diastolic: Optional[int] = None

class VitalSigns(BaseModel):
    temperature: Optional[float] = Field(None, ge=30, le=50)
    bloodPressure: Optional[BloodPressure] = None
    heartRate: Optional[int] = Field(None, ge=30, le=200)
    weight: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)
    oxygenSaturation: Optional[float] = Field(None, ge=0, le=100)

class AppointmentCreate(BaseModel):
    patient: str
    doctor: str
    appointmentDate: datetime.datetime
    reason: str = Field(min_length=5, max_length=500)
    type: AppointmentType = "consultation"
    duration: int = Field(30, ge=15, le=180)
    notes: Optional[str] = Field(None, max_length=1000)
    symptoms: List[str] = []
    vitalSigns: Optional[VitalSigns] = None
    assignedNurse: Optional[str] = None
    room: Optional[str] = None
    followUpRequired: bool = False
    followUpDate: Optional[datetime.datetime] = None

class AppointmentUpdate(BaseModel):
    patient: Optional[str] = None
    doctor: Optional[str] = None
    appointmentDate: Optional[datetime.datetime] = None
    reason: Optional[str] = Field(None, min_length=5, max_length=500)
    type: Optional[AppointmentType] = None
    duration: Optional[int] = Field(None, ge=15, le=180)
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = Field(None, max_length=1000)
    symptoms: Optional[List[str]] = None
    vitalSigns: Optional[VitalSigns] = None
    assignedNurse: Optional[str] = None
    room: Optional[str] = None
    rescheduleReason: Optional[str] = None
    followUpRequired: Optional[bool] = None
    followUpDate: Optional[datetime.datetime] = None

class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus

# Expert system input. Lab results default to not-done at every level.
class SymptomInput(BaseModel):
    symptom: str
    severity: Optional[Severity] = None
    duration: Optional[str] = None

class MalariaTestResults(BaseModel):
    rapidTest: LabOutcome = LabOutcome.NOT_DONE
    microscopy: LabOutcome = LabOutcome.NOT_DONE
    parasiteCount: Optional[float] = Field(None, ge=0)

class TyphoidTestResults(BaseModel):
    widalTest: LabOutcome = LabOutcome.NOT_DONE
    bloodCulture: LabOutcome = LabOutcome.NOT_DONE
    stoolCulture: LabOutcome = LabOutcome.NOT_DONE
    typhiDot: LabOutcome = LabOutcome.NOT_DONE

class LabResults(BaseModel):
    malaria: MalariaTestResults = Field(default_factory=MalariaTestResults)
    typhoid: TyphoidTestResults = Field(default_factory=TyphoidTestResults)

class AssessmentRequest(BaseModel):
    symptoms: Optional[List[SymptomInput]] = None
    testResults: LabResults = Field(default_factory=LabResults)

class DiagnosisSymptom(BaseModel):
    symptom: str = Field(min_length=2, max_length=100)
    severity: Severity
    duration: Optional[str] = None
    notes: Optional[str] = None

class DiagnosisDetail(BaseModel):
    primary: str = Field(min_length=3, max_length=200)
    secondary: List[str] = []
    confidence: Optional[float] = Field(None, ge=0, le=100)
    icd10Code: Optional[str] = None
    notes: Optional[str] = None

class MalariaAssessmentInput(BaseModel):
    testResults: MalariaTestResults = Field(default_factory=MalariaTestResults)
    species: Optional[MalariaSpecies] = None
    complications: List[str] = []

class TyphoidAssessmentInput(BaseModel):
    testResults: TyphoidTestResults = Field(default_factory=TyphoidTestResults)
    complications: List[str] = []

class TreatmentMedication(BaseModel):
    name: str
    dosage: str
    frequency: str
    duration: str
    instructions: Optional[str] = None

class Treatment(BaseModel):
    medications: List[TreatmentMedication] = []
    generalInstructions: Optional[str] = None
    dietaryRecommendations: Optional[str] = None
    activityRestrictions: Optional[str] = None

class FollowUp(BaseModel):
    required: bool = False
    date: Optional[datetime.date] = None
    instructions: Optional[str] = None

class DiagnosisCreate(BaseModel):
    patient: str
    appointment: str
    symptoms: List[DiagnosisSymptom]
    diagnosis: DiagnosisDetail
    malariaAssessment: MalariaAssessmentInput = Field(default_factory=MalariaAssessmentInput)
    typhoidAssessment: TyphoidAssessmentInput = Field(default_factory=TyphoidAssessmentInput)
    treatment: Optional[Treatment] = None
    followUp: Optional[FollowUp] = None
    status: DiagnosisStatus = "active"

class DiagnosisUpdate(BaseModel):
    symptoms: Optional[List[DiagnosisSymptom]] = Field(None, min_length=1)
    diagnosis: Optional[DiagnosisDetail] = None
    malariaAssessment: Optional[MalariaAssessmentInput] = None
    typhoidAssessment: Optional[TyphoidAssessmentInput] = None
    treatment: Optional[Treatment] = None
    followUp: Optional[FollowUp] = None
    status: Optional[DiagnosisStatus] = None

class PrescribedMedication(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    genericName: Optional[str] = None
    dosage: str = Field(min_length=2, max_length=50)
    frequency: str = Field(min_length=2, max_length=50)
    duration: str = Field(min_length=2, max_length=50)
    quantity: int = Field(ge=1)
    instructions: Optional[str] = None
    warnings: List[str] = []
    unitPrice: Optional[float] = Field(None, ge=0)

class PrescriptionCreate(BaseModel):
    patient: str
    diagnosis: Optional[str] = None
    appointment: Optional[str] = None
    medications: List[PrescribedMedication] = Field(min_length=1)
    instructions: Optional[str] = Field(None, max_length=1000)
    refillsAllowed: int = Field(0, ge=0)
    priority: Literal["routine", "urgent", "emergency"] = "routine"
    validUntil: Optional[datetime.datetime] = None

class PrescriptionUpdate(BaseModel):
    medications: Optional[List[PrescribedMedication]] = Field(None, min_length=1)
    instructions: Optional[str] = Field(None, max_length=1000)
    refillsAllowed: Optional[int] = Field(None, ge=0)
    priority: Optional[Literal["routine", "urgent", "emergency"]] = None
    validUntil: Optional[datetime.datetime] = None

class DispenseItem(BaseModel):
    medicationIndex: int = Field(ge=0)
    quantityDispensed: int = Field(ge=1)

class DispenseRequest(BaseModel):
    medications: List[DispenseItem] = Field(min_length=1)
    dispensingNotes: Optional[str] = Field(None, max_length=500)


# ══════════════════════════════════════════════════════════════════════════════
#  ENDPOINTS
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/api/health")
async def health():
    return {"status": "ok", "platform": "MESMTF API", "timestamp": now_iso()}

# ── AUTH ─────────────────────────────────────────────────────────────────────
@app.post("/api/auth/login")
async def login(req: LoginRequest):
    user = next((u for u in users_db.records if u["email"].lower() == req.email.lower()), None)
    if not user or not verify_password(req.password, user["password"]):
        logger.warning("Failed login for %s", req.email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if user.get("status", "active") != "active":
        raise HTTPException(status_code=401, detail="Account is not active")
    users_db.update(user["id"], {"lastLogin": now_iso()})
    token = create_jwt(user["id"], user["email"], user["role"])
    return {
        "status": "success",
        "user": {"id": user["id"], "name": user["name"], "email": user["email"], "role": user["role"]},
        "token": token
    }

@app.post("/api/auth/register", status_code=201)
async def register(req: RegisterRequest):
    if req.role == "admin":
        raise HTTPException(status_code=403, detail="Admin accounts can only be created by an administrator")
    if users_db.exists_other("email", req.email):
        raise HTTPException(status_code=409, detail="Email already registered")
    if len(req.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters")
    user = users_db.insert({
        "email": req.email,
        "name": req.name,
        "role": req.role,
        "password": hash_password(req.password),
        "status": "active",
        "profile": {}
    })
    token = create_jwt(user["id"], user["email"], user["role"])
    return {
        "status": "success",
        "user": {"id": user["id"], "name": user["name"], "email": user["email"], "role": user["role"]},
        "token": token
    }

@app.get("/api/auth/me")
async def me(user: dict = Depends(get_current_user)):
    return {"user": public_user(user)}

# ── USERS ────────────────────────────────────────────────────────────────────
@app.get("/api/users")
async def list_users(role: Optional[str] = None, status: Optional[str] = None,
                     user: dict = Depends(require_roles("admin", "receptionist"))):
    filters = {k: v for k, v in {"role": role, "status": status}.items() if v}
    users = [public_user(u) for u in users_db.find(**filters)]
    return {"count": len(users), "users": users}

@app.get("/api/users/{user_id}")
async def get_user(user_id: str, user: dict = Depends(get_current_user)):
    if user["role"] not in ("admin", "receptionist") and user["id"] != user_id:
        raise HTTPException(status_code=403, detail="Not authorized to view this user")
    found = users_db.get(user_id)
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": public_user(found)}

@app.post("/api/users", status_code=201)
async def create_user(req: UserCreate, user: dict = Depends(require_roles("admin"))):
    if users_db.exists_other("email", req.email):
        raise HTTPException(status_code=409, detail="User with this email already exists")
    if len(req.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters")
    created = users_db.insert({
        "email": req.email,
        "name": req.name,
        "role": req.role,
        "password": hash_password(req.password),
        "status": "active",
        "profile": req.profile or {}
    })
    logger.info("Admin %s created %s account %s", user["id"], created["role"], created["id"])
    return {"status": "success", "user": public_user(created)}

@app.put("/api/users/{user_id}")
async def update_user(user_id: str, req: UserUpdate, user: dict = Depends(get_current_user)):
    if not users_db.get(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    if user["role"] != "admin" and user["id"] != user_id:
        raise HTTPException(status_code=403, detail="Not authorized to update this user")
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    if user["role"] != "admin":
        changes.pop("role", None)
    if "email" in changes and users_db.exists_other("email", changes["email"], exclude_id=user_id):
        raise HTTPException(status_code=409, detail="Email already registered")
    updated = users_db.update(user_id, changes)
    return {"status": "success", "user": public_user(updated)}

@app.delete("/api/users/{user_id}")
async def delete_user(user_id: str, user: dict = Depends(require_roles("admin"))):
    if not users_db.get(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    if user["id"] == user_id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    users_db.delete(user_id)
    return {"status": "success", "message": "User deleted successfully"}

@app.patch("/api/users/{user_id}/status")
async def update_user_status(user_id: str, req: UserStatusUpdate, user: dict = Depends(require_roles("admin"))):
    updated = users_db.update(user_id, {"status": req.status})
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return {"status": "success", "user": public_user(updated)}

# ── PATIENTS ─────────────────────────────────────────────────────────────────
PATIENT_SEARCH_FIELDS = ("firstName", "lastName", "patientId", "phone", "email")

def patient_matches(patient: dict, query: str) -> bool:
    q = query.lower()
    return any(q in str(patient.get(f) or "").lower() for f in PATIENT_SEARCH_FIELDS)

@app.get("/api/patients")
async def list_patients(search: Optional[str] = None, status: Optional[str] = None,
                        user: dict = Depends(require_roles(*STAFF))):
    patients = patients_db.find(**({"status": status} if status else {}))
    if search:
        patients = [p for p in patients if patient_matches(p, search)]
    patients = sorted(patients, key=lambda p: p["createdAt"], reverse=True)
    return {"count": len(patients), "patients": patients}

@app.get("/api/patients/search")
async def search_patients(q: str = "", user: dict = Depends(require_roles(*STAFF))):
    if len(q.strip()) < 2:
        raise HTTPException(status_code=400, detail="Search query must be at least 2 characters long")
    matches = [
        {k: p.get(k) for k in ("id", "patientId", "firstName", "lastName", "phone", "email", "dateOfBirth")}
        for p in patients_db.records if patient_matches(p, q.strip())
    ][:20]
    return {"count": len(matches), "patients": matches}

@app.get("/api/patients/{patient_id}")
async def get_patient(patient_id: str, user: dict = Depends(get_current_user)):
    ensure_patient_access(user, patient_id)
    patient = patients_db.get(patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return {"patient": patient}

@app.post("/api/patients", status_code=201)
async def create_patient(req: PatientCreate, user: dict = Depends(require_roles(*SCHEDULERS))):
    if patients_db.exists_other("phone", req.phone):
        raise HTTPException(status_code=409, detail="Patient with this phone number already exists")
    data = req.model_dump(mode="json")
    if data.get("email"):
        data["email"] = data["email"].strip().lower()
    data["patientId"] = patients_db.next_code("patientId", "P")
    patient = patients_db.insert(data)
    logger.info("Registered patient %s", patient["patientId"])
    return {"status": "success", "patient": patient}

@app.put("/api/patients/{patient_id}")
async def update_patient(patient_id: str, req: PatientUpdate, user: dict = Depends(require_roles(*SCHEDULERS))):
    if not patients_db.get(patient_id):
        raise HTTPException(status_code=404, detail="Patient not found")
    changes = req.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if "phone" in changes and patients_db.exists_other("phone", changes["phone"], exclude_id=patient_id):
        raise HTTPException(status_code=409, detail="Patient with this phone number already exists")
    patient = patients_db.update(patient_id, changes)
    return {"status": "success", "patient": patient}

@app.delete("/api/patients/{patient_id}")
async def delete_patient(patient_id: str, user: dict = Depends(require_roles("admin"))):
    if not patients_db.delete(patient_id):
        raise HTTPException(status_code=404, detail="Patient not found")
    return {"status": "success", "message": "Patient deleted successfully"}

# ── APPOINTMENTS ─────────────────────────────────────────────────────────────
def find_conflict(doctor_id: str, start: datetime.datetime, duration: int, exclude_id: Optional[str] = None):
    """First live appointment of the doctor whose time slot overlaps [start, start + duration)."""
    end = start + datetime.timedelta(minutes=duration)
    for appt in appointments_db.find(doctor=doctor_id, status=ACTIVE_APPOINTMENT_STATUSES):
        if appt["id"] == exclude_id:
            continue
        other_start = parse_dt(appt["appointmentDate"])
        other_end = other_start + datetime.timedelta(minutes=appt.get("duration", 30))
        if other_start < end and start < other_end:
            return appt
    return None

def require_doctor(doctor_id: str) -> dict:
    doctor = users_db.find_one(id=doctor_id, role="doctor")
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")
    return doctor

@app.get("/api/appointments")
async def list_appointments(status: Optional[str] = None, doctor: Optional[str] = None,
                            patient: Optional[str] = None, date: Optional[datetime.date] = None,
                            user: dict = Depends(get_current_user)):
    filters = {k: v for k, v in {"status": status, "doctor": doctor, "patient": patient}.items() if v}
    if scope_to_user(user, filters) is None:
        return {"count": 0, "appointments": []}
    appointments = appointments_db.find(**filters)
    if date:
        appointments = [a for a in appointments if parse_dt(a["appointmentDate"]).date() == date]
    appointments = sorted(appointments, key=lambda a: parse_dt(a["appointmentDate"]))
    return {"count": len(appointments), "appointments": appointments}

@app.get("/api/appointments/{appointment_id}")
async def get_appointment(appointment_id: str, user: dict = Depends(get_current_user)):
    appointment = appointments_db.get(appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    ensure_patient_access(user, appointment["patient"])
    return {"appointment": appointment}

@app.post("/api/appointments", status_code=201)
async def create_appointment(req: AppointmentCreate, user: dict = Depends(require_roles(*SCHEDULERS))):
    start = as_utc(req.appointmentDate)
    if start <= utcnow():
        raise HTTPException(status_code=400, detail="Appointment date must be in the future")
    if not patients_db.get(req.patient):
        raise HTTPException(status_code=404, detail="Patient not found")
    require_doctor(req.doctor)
    conflict = find_conflict(req.doctor, start, req.duration)
    if conflict:
        logger.info("Slot conflict for doctor %s with %s", req.doctor, conflict["appointmentId"])
        raise HTTPException(status_code=409, detail="Time slot is already booked")

    data = req.model_dump(mode="json")
    data.update({
        "appointmentId": appointments_db.next_code("appointmentId", "A"),
        "appointmentDate": start.isoformat(),
        "status": "scheduled",
        "createdBy": user["id"],
    })
    appointment = appointments_db.insert(data)
    return {"status": "success", "appointment": appointment}

@app.put("/api/appointments/{appointment_id}")
async def update_appointment(appointment_id: str, req: AppointmentUpdate, user: dict = Depends(require_roles(*SCHEDULERS))):
    appointment = appointments_db.get(appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    changes = req.model_dump(mode="json", exclude_unset=True, exclude_none=True)

    if "patient" in changes and not patients_db.get(changes["patient"]):
        raise HTTPException(status_code=404, detail="Patient not found")
    if "doctor" in changes:
        require_doctor(changes["doctor"])

    if changes.keys() & {"appointmentDate", "duration", "doctor"}:
        start = as_utc(req.appointmentDate) if req.appointmentDate else parse_dt(appointment["appointmentDate"])
        doctor_id = changes.get("doctor", appointment["doctor"])
        duration = changes.get("duration", appointment.get("duration", 30))
        if find_conflict(doctor_id, start, duration, exclude_id=appointment_id):
            raise HTTPException(status_code=409, detail="Time slot is already booked")
        if req.appointmentDate:
            changes["appointmentDate"] = start.isoformat()
            if not appointment.get("originalDate"):
                changes["originalDate"] = appointment["appointmentDate"]

    appointment = appointments_db.update(appointment_id, changes)
    return {"status": "success", "appointment": appointment}

@app.delete("/api/appointments/{appointment_id}")
async def cancel_appointment(appointment_id: str, user: dict = Depends(require_roles("doctor", "receptionist", "admin"))):
    appointment = appointments_db.update(appointment_id, {"status": "cancelled"})
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return {"status": "success", "message": "Appointment cancelled successfully", "appointment": appointment}

@app.patch("/api/appointments/{appointment_id}/status")
async def update_appointment_status(appointment_id: str, req: AppointmentStatusUpdate,
                                    user: dict = Depends(require_roles(*SCHEDULERS))):
    appointment = appointments_db.update(appointment_id, {"status": req.status})
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return {"status": "success", "appointment": appointment}

# ── EXPERT SYSTEM ────────────────────────────────────────────────────────────
@app.post("/api/diagnosis/expert-system/assess")
async def expert_system_assess(req: AssessmentRequest, user: dict = Depends(require_roles("doctor", "nurse"))):
    symptoms = None if req.symptoms is None else [s.model_dump(mode="json") for s in req.symptoms]
    result = expert_system.assess(symptoms, req.testResults.model_dump(mode="json"))
    return expert_system.assessment_to_dict(result)

# ── DIAGNOSIS ────────────────────────────────────────────────────────────────
def recommendations_summary(result) -> dict:
    return {
        name: {"riskLevel": a.risk_level.value, "score": a.score, "recommendation": a.recommendation}
        for name, a in result.items()
    }

@app.get("/api/diagnosis")
async def list_diagnoses(patient: Optional[str] = None, doctor: Optional[str] = None,
                         user: dict = Depends(get_current_user)):
    filters = {k: v for k, v in {"patient": patient, "doctor": doctor}.items() if v}
    if scope_to_user(user, filters) is None:
        return {"count": 0, "diagnoses": []}
    diagnoses = sorted(diagnoses_db.find(**filters), key=lambda d: d["createdAt"], reverse=True)
    return {"count": len(diagnoses), "diagnoses": diagnoses}

@app.get("/api/diagnosis/{diagnosis_id}")
async def get_diagnosis(diagnosis_id: str, user: dict = Depends(get_current_user)):
    diagnosis = diagnoses_db.get(diagnosis_id)
    if not diagnosis:
        raise HTTPException(status_code=404, detail="Diagnosis not found")
    ensure_patient_access(user, diagnosis["patient"])
    return {"diagnosis": diagnosis}

@app.post("/api/diagnosis", status_code=201)
async def create_diagnosis(req: DiagnosisCreate, user: dict = Depends(require_roles("doctor"))):
    data = req.model_dump(mode="json")
    # Raises ValidationError before anything is looked up or stored.
    result = expert_system.assess(data["symptoms"], {
        "malaria": data["malariaAssessment"]["testResults"],
        "typhoid": data["typhoidAssessment"]["testResults"],
    })

    if not patients_db.get(req.patient):
        raise HTTPException(status_code=404, detail="Patient not found")
    if not appointments_db.get(req.appointment):
        raise HTTPException(status_code=404, detail="Appointment not found")

    data["diagnosisId"] = diagnoses_db.next_code("diagnosisId", "D")
    data["doctor"] = user["id"]
    data["malariaAssessment"]["riskLevel"] = result["malaria"].risk_level.value
    data["typhoidAssessment"]["riskLevel"] = result["typhoid"].risk_level.value
    diagnosis = diagnoses_db.insert(data)
    logger.info("Diagnosis %s created by %s (malaria=%s, typhoid=%s)", diagnosis["diagnosisId"], user["id"],
                data["malariaAssessment"]["riskLevel"], data["typhoidAssessment"]["riskLevel"])

    return {
        "status": "success",
        "diagnosis": diagnosis,
        "expertSystemRecommendations": recommendations_summary(result)
    }

def merge_fields(stored: dict, changes: dict) -> dict:
    """Overlay a partial sub-object onto the stored one, one level of nesting deep."""
    merged = dict(stored)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            value = {**merged[key], **value}
        merged[key] = value
    return merged

@app.put("/api/diagnosis/{diagnosis_id}")
async def update_diagnosis(diagnosis_id: str, req: DiagnosisUpdate, user: dict = Depends(require_roles("doctor"))):
    diagnosis = diagnoses_db.get(diagnosis_id)
    if not diagnosis:
        raise HTTPException(status_code=404, detail="Diagnosis not found")
    changes = req.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    for key in ("diagnosis", "malariaAssessment", "typhoidAssessment"):
        if key in changes:
            changes[key] = merge_fields(diagnosis.get(key) or {}, changes[key])
    # Stored risk levels are kept as computed at creation.
    for key in ("malariaAssessment", "typhoidAssessment"):
        if key in changes:
            changes[key]["riskLevel"] = diagnosis[key].get("riskLevel")
    diagnosis = diagnoses_db.update(diagnosis_id, changes)
    return {"status": "success", "diagnosis": diagnosis}

# ── PRESCRIPTIONS ─────────────────────────────────────────────────────────────
def priced_medications(medications: List[dict]) -> List[dict]:
    priced = []
    for med in medications:
        med = {**med, "quantityDispensed": med.get("quantityDispensed", 0), "status": med.get("status", "pending")}
        if med.get("unitPrice") is not None:
            med["totalPrice"] = round(med["unitPrice"] * med["quantity"], 2)
        priced.append(med)
    return priced

def total_cost(medications: List[dict]) -> float:
    return round(sum(m.get("totalPrice") or 0 for m in medications), 2)

def prescription_status(medications: List[dict]) -> str:
    if all(m["status"] == "dispensed" for m in medications):
        return "dispensed"
    if any(m["quantityDispensed"] > 0 for m in medications):
        return "partially-dispensed"
    return "pending"

def apply_dispensing(prescription: dict, items: List[DispenseItem]) -> List[dict]:
    """
    Add dispensed quantities per medication index, capped at the prescribed
    quantity, and return the updated medication list.
    """
    medications = [dict(m) for m in prescription["medications"]]
    for item in items:
        if item.medicationIndex >= len(medications):
            raise HTTPException(status_code=400, detail=f"Medication index {item.medicationIndex} out of range")
        med = medications[item.medicationIndex]
        med["quantityDispensed"] = min(med["quantityDispensed"] + item.quantityDispensed, med["quantity"])
        if med["quantityDispensed"] >= med["quantity"]:
            med["status"] = "dispensed"
        elif med["quantityDispensed"] > 0:
            med["status"] = "partially-dispensed"
    return medications

@app.get("/api/prescriptions")
async def list_prescriptions(patient: Optional[str] = None, doctor: Optional[str] = None,
                             status: Optional[str] = None, user: dict = Depends(get_current_user)):
    filters = {k: v for k, v in {"patient": patient, "doctor": doctor, "status": status}.items() if v}
    if user["role"] == "pharmacist" and not status:
        filters["status"] = ("pending", "partially-dispensed")
    if scope_to_user(user, filters) is None:
        return {"count": 0, "prescriptions": []}
    prescriptions = sorted(prescriptions_db.find(**filters), key=lambda p: p["createdAt"], reverse=True)
    return {"count": len(prescriptions), "prescriptions": prescriptions}

@app.get("/api/prescriptions/{rx_id}")
async def get_prescription(rx_id: str, user: dict = Depends(get_current_user)):
    prescription = prescriptions_db.get(rx_id)
    if not prescription:
        raise HTTPException(status_code=404, detail="Prescription not found")
    ensure_patient_access(user, prescription["patient"])
    return {"prescription": prescription}

@app.post("/api/prescriptions", status_code=201)
async def create_prescription(req: PrescriptionCreate, user: dict = Depends(require_roles("doctor"))):
    if not patients_db.get(req.patient):
        raise HTTPException(status_code=404, detail="Patient not found")
    if req.diagnosis and not diagnoses_db.get(req.diagnosis):
        raise HTTPException(status_code=404, detail="Diagnosis not found")

    data = req.model_dump(mode="json")
    data["medications"] = priced_medications(data["medications"])
    valid_until = as_utc(req.validUntil) if req.validUntil else utcnow() + datetime.timedelta(days=PRESCRIPTION_VALIDITY_DAYS)
    data.update({
        "prescriptionId": prescriptions_db.next_code("prescriptionId", "RX"),
        "doctor": user["id"],
        "status": "pending",
        "validUntil": valid_until.isoformat(),
        "refillsUsed": 0,
        "totalCost": total_cost(data["medications"]),
    })
    prescription = prescriptions_db.insert(data)
    return {"status": "success", "prescription": prescription}

@app.put("/api/prescriptions/{rx_id}")
async def update_prescription(rx_id: str, req: PrescriptionUpdate, user: dict = Depends(require_roles("doctor"))):
    if not prescriptions_db.get(rx_id):
        raise HTTPException(status_code=404, detail="Prescription not found")
    changes = req.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if "medications" in changes:
        changes["medications"] = priced_medications(changes["medications"])
        changes["totalCost"] = total_cost(changes["medications"])
        changes["status"] = prescription_status(changes["medications"])
    prescription = prescriptions_db.update(rx_id, changes)
    return {"status": "success", "prescription": prescription}

@app.patch("/api/prescriptions/{rx_id}/dispense")
async def dispense_prescription(rx_id: str, req: DispenseRequest, user: dict = Depends(require_roles("pharmacist"))):
    prescription = prescriptions_db.get(rx_id)
    if not prescription:
        raise HTTPException(status_code=404, detail="Prescription not found")
    if prescription["status"] == "cancelled":
        raise HTTPException(status_code=400, detail="Cannot dispense a cancelled prescription")

    medications = apply_dispensing(prescription, req.medications)
    prescription = prescriptions_db.update(rx_id, {
        "medications": medications,
        "status": prescription_status(medications),
        "dispensedBy": user["id"],
        "dispensedAt": now_iso(),
        "dispensingNotes": req.dispensingNotes,
    })
    logger.info("Prescription %s dispensed by %s (%s)", prescription["prescriptionId"], user["id"], prescription["status"])
    return {"status": "success", "message": "Prescription dispensed successfully", "prescription": prescription}

@app.patch("/api/prescriptions/{rx_id}/cancel")
async def cancel_prescription(rx_id: str, user: dict = Depends(require_roles("doctor", "admin"))):
    prescription = prescriptions_db.update(rx_id, {"status": "cancelled"})
    if not prescription:
        raise HTTPException(status_code=404, detail="Prescription not found")
    return {"status": "success", "message": "Prescription cancelled successfully", "prescription": prescription}

# ── ADMIN ────────────────────────────────────────────────────────────────────
def count_by(records: List[dict], key) -> dict:
    counts = {}
    for r in records:
        value = key(r) if callable(key) else r.get(key)
        counts[value] = counts.get(value, 0) + 1
    return counts

def period_start(period: str, now: datetime.datetime) -> datetime.datetime:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return today
    if period == "weekly":
        return now - datetime.timedelta(days=7)
    if period == "yearly":
        return today.replace(month=1, day=1)
    return today.replace(day=1)

@app.get("/api/admin/dashboard")
async def admin_dashboard(user: dict = Depends(require_roles("admin"))):
    now = utcnow()
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_week = start_of_today - datetime.timedelta(days=start_of_today.weekday())
    start_of_month = start_of_today.replace(day=1)
    appointment_dates = [parse_dt(a["appointmentDate"]) for a in appointments_db.records]
    recent = sorted(appointments_db.records, key=lambda a: a["createdAt"], reverse=True)[:10]

    return {
        "overview": {
            "totalUsers": users_db.count(),
            "totalPatients": patients_db.count(),
            "totalAppointments": appointments_db.count(),
            "totalDiagnoses": diagnoses_db.count(),
            "totalPrescriptions": prescriptions_db.count(),
            "pendingPrescriptions": prescriptions_db.count(status="pending"),
        },
        "appointments": {
            "today": sum(1 for d in appointment_dates if start_of_today <= d < start_of_today + datetime.timedelta(days=1)),
            "thisWeek": sum(1 for d in appointment_dates if d >= start_of_week),
            "thisMonth": sum(1 for d in appointment_dates if d >= start_of_month),
        },
        "distribution": {
            "usersByRole": count_by(users_db.records, "role"),
            "appointmentsByStatus": count_by(appointments_db.records, "status"),
            "malariaRisk": count_by(diagnoses_db.records, lambda d: d["malariaAssessment"].get("riskLevel")),
            "typhoidRisk": count_by(diagnoses_db.records, lambda d: d["typhoidAssessment"].get("riskLevel")),
        },
        "recentActivity": [
            {k: a.get(k) for k in ("id", "appointmentId", "patient", "doctor", "appointmentDate", "status", "createdAt")}
            for a in recent
        ],
        "timestamp": now_iso()
    }

@app.get("/api/admin/reports/summary")
async def admin_summary_report(period: Literal["daily", "weekly", "monthly", "yearly"] = "monthly",
                               user: dict = Depends(require_roles("admin"))):
    now = utcnow()
    start = period_start(period, now)

    def since(records):
        return [r for r in records if parse_dt(r["createdAt"]) >= start]

    diagnoses = since(diagnoses_db.records)
    top_diagnoses = sorted(count_by(diagnoses, lambda d: (d.get("diagnosis") or {}).get("primary")).items(),
                           key=lambda kv: kv[1], reverse=True)[:10]
    prescriptions = since(prescriptions_db.records)
    prescription_stats = {}
    for p in prescriptions:
        stats = prescription_stats.setdefault(p["status"], {"count": 0, "totalCost": 0.0})
        stats["count"] += 1
        stats["totalCost"] = round(stats["totalCost"] + (p.get("totalCost") or 0), 2)

    return {
        "period": period,
        "dateRange": {"start": start.isoformat(), "end": now.isoformat()},
        "appointments": count_by(since(appointments_db.records), "status"),
        "diagnoses": [{"primary": name, "count": n} for name, n in top_diagnoses],
        "prescriptions": prescription_stats,
        "newPatients": dict(sorted(count_by(since(patients_db.records), lambda p: p["createdAt"][:10]).items())),
    }

@app.get("/")
async def root():
    return {"message": "MESMTF API Running. See /docs"}

if __name__ == "__main__":

    print("\n" + "=" * 70)
    print("MESMTF API -- Starting")
    print("=" * 70)
    print("\nServer URLs:")
    print("  * API Server:    http://localhost:8000")
    print("  * API Docs:      http://localhost:8000/docs")
    print("  * Health Check:  http://localhost:8000/api/health")
    print("\nExpert System:")
    print(f"  * Malaria catalog:  {len(expert_system.MALARIA_SYMPTOMS)} symptoms")
    print(f"  * Typhoid catalog:  {len(expert_system.TYPHOID_SYMPTOMS)} symptoms")
    if SEED_DEFAULT_USERS:
        print("\nDefault Login (seeded when no users exist):")
        for seed in DEFAULT_USERS:
            print(f"  * {seed['role']:<8} {seed['email']} / {DEFAULT_PASSWORD}")
    print("\n" + "=" * 70 + "\n")

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
