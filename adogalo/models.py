from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List


# ============================================
# PROJECT MODELS
# ============================================
class MilestoneSeed(BaseModel):
    judul: str
    deskripsi: Optional[str] = None
    persentase: float


class ProjectCreate(BaseModel):
    judul: str
    client_name: str = Field(alias="clientName")
    client_email: EmailStr = Field(alias="clientEmail")
    vendor_name: str = Field(alias="vendorName")
    vendor_email: EmailStr = Field(alias="vendorEmail")
    budget: float
    client_fee_percent: float = Field(default=1, alias="clientFeePercent")
    vendor_fee_percent: float = Field(default=2, alias="vendorFeePercent")
    retensi_percent: float = Field(default=0, alias="retensiPercent")
    retensi_days: int = Field(default=0, alias="retensiDays")
    milestones: List[MilestoneSeed] = []

    class Config:
        populate_by_name = True


class ProjectUpdate(BaseModel):
    judul: Optional[str] = None
    client_name: Optional[str] = Field(default=None, alias="clientName")
    client_email: Optional[EmailStr] = Field(default=None, alias="clientEmail")
    vendor_name: Optional[str] = Field(default=None, alias="vendorName")
    vendor_email: Optional[EmailStr] = Field(default=None, alias="vendorEmail")

    class Config:
        populate_by_name = True


# ============================================
# MILESTONE MODELS
# ============================================
class MilestoneCreate(BaseModel):
    judul: str
    persentase: float
    deskripsi: Optional[str] = None
    harga: Optional[float] = None


class MilestoneUpdate(BaseModel):
    judul: Optional[str] = None
    deskripsi: Optional[str] = None
    harga: Optional[float] = None


class MilestoneAction(BaseModel):
    action: str  # start, daily, finish, complain, fix, approve, confirm-payment
    catatan: Optional[str] = None
    files: List[str] = []


# ============================================
# TERMIN MODELS
# ============================================
class TerminAction(BaseModel):
    action: str  # request_payment, cancel_request, confirm_payment, process_refund
    termin_id: str = Field(alias="terminId")

    class Config:
        populate_by_name = True


class TerminConfig(BaseModel):
    judul: str
    base_amount: float = Field(alias="baseAmount")
    milestone_id: Optional[str] = Field(default=None, alias="milestoneId")

    class Config:
        populate_by_name = True


class TerminReconfigure(BaseModel):
    termins: List[TerminConfig]


# ============================================
# RETENSI MODELS
# ============================================
class RetensiAction(BaseModel):
    action: str  # propose, approve, reject, complain, fix, confirm_fix, reject_fix, release
    percent: Optional[float] = None
    days: Optional[int] = None
    catatan: Optional[str] = None
    files: List[str] = []


# ============================================
# ADDITIONAL WORK / REDUCTION MODELS
# ============================================
class AdditionalWorkAction(BaseModel):
    action: str  # create, approve, reject
    additional_work_id: Optional[str] = Field(default=None, alias="additionalWorkId")
    judul: Optional[str] = None
    amount: Optional[float] = None
    deskripsi: Optional[str] = None
    files: List[str] = []

    class Config:
        populate_by_name = True


class ReductionAction(BaseModel):
    action: str  # create, approve_client, reject_client
    change_request_id: Optional[str] = Field(default=None, alias="changeRequestId")
    milestone_id: Optional[str] = Field(default=None, alias="milestoneId")
    amount: Optional[float] = None
    alasan: Optional[str] = None
    files: List[str] = []

    class Config:
        populate_by_name = True


# ============================================
# COMMENT MODEL
# ============================================
class CommentCreate(BaseModel):
    teks: Optional[str] = None
    files: List[str] = []
    reply_to: Optional[str] = Field(default=None, alias="replyTo")

    class Config:
        populate_by_name = True


# ============================================
# MANAGER MODELS
# ============================================
class ManagerCreate(BaseModel):
    nama: str
    email: EmailStr
    project_ids: List[str] = Field(default=[], alias="projectIds")

    class Config:
        populate_by_name = True


class ManagerUpdate(BaseModel):
    nama: Optional[str] = None
    project_ids: Optional[List[str]] = Field(default=None, alias="projectIds")

    class Config:
        populate_by_name = True
