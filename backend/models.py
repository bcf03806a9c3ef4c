from pydantic import BaseModel, Field
from typing import Optional, List, Union

# Amounts arrive as typed by the user and are parsed strictly by the engine
RawAmount = Optional[Union[str, int, float]]

# ============================================
# FUNDING RECORD MODELS
# ============================================
class FundingRecordCreate(BaseModel):
    fund_need_key: str = Field(..., min_length=1)
    year: int
    month: int
    amount: RawAmount = None
    remark: Optional[str] = None

class FundingRecordSave(BaseModel):
    amount: RawAmount = None
    remark: Optional[str] = None

class FundingRecordBatchItem(FundingRecordSave):
    id: str

class FundingBatchSave(BaseModel):
    items: List[FundingRecordBatchItem] = Field(..., min_length=1)

class FundingBatchSubmit(BaseModel):
    record_ids: List[str] = Field(..., min_length=1)

class FundingPeriodGenerate(BaseModel):
    fund_need_keys: List[str] = Field(..., min_length=1)
    year: int
    month: int

class RemarkUpdate(BaseModel):
    remark: Optional[str] = None

# ============================================
# AUDIT MODELS
# ============================================
class AuditDecisionInput(BaseModel):
    row_id: str
    amount: RawAmount = None
    remark: Optional[str] = None

class AuditProposeRequest(BaseModel):
    row_id: str
    raw_value: RawAmount = None
    remark: Optional[str] = None

class AuditDraftRequest(BaseModel):
    year: int
    month: int
    decisions: List[AuditDecisionInput] = Field(..., min_length=1)

class AuditSubmitRequest(BaseModel):
    year: int
    month: int
    row_ids: List[str] = Field(..., min_length=1)
    decisions: List[AuditDecisionInput] = []
    remark: Optional[str] = None
    action: str = Field(default="approve", description="approve or reject")

# ============================================
# WITHDRAWAL MODELS
# ============================================
class WithdrawalRequestCreate(BaseModel):
    record_id: str
    module_type: str = Field(..., description="predict, actual_user, actual_fin or actual")
    reason: str = Field(..., description="Mandatory reason for withdrawal")

class WithdrawalCancel(BaseModel):
    record_id: str

class WithdrawalProcess(BaseModel):
    decision: str = Field(..., description="approved or rejected")
    comment: Optional[str] = None

class WithdrawalPolicyUpdate(BaseModel):
    allowed_statuses: List[str] = []
    time_limit: int = Field(default=0, ge=0, description="Hours after submission, 0 = no limit")
    max_attempts: int = Field(default=0, ge=0, description="0 = unlimited")
    require_approval: bool = True
