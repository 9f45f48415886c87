from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, RootModel, model_validator


QuotationStatus = Literal["draft", "pending", "processing", "quoted", "accepted", "rejected", "expired", "closed", "revised"]
ThreadStatus = Literal["active", "awaiting_user_permission", "user_approved_closure", "closed"]
MessageType = Literal[
    "message",
    "system_notification",
    "closure_request",
    "closure_permission_granted",
    "closure_permission_rejected",
    "thread_closed",
]
AuthorRole = Literal["user", "admin"]
Urgency = Literal["standard", "urgent", "asap"]
DiscountType = Literal["percentage", "fixed"]


class Discount(BaseModel):
    type: DiscountType
    value: float = Field(ge=0)

    @model_validator(mode="after")
    def _percentage_bounds(self) -> Discount:
        if self.type == "percentage" and self.value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class LineItem(BaseModel):
    item_id: str | None = None
    product_id: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    description: str | None = None
    specifications: str | None = None
    quantity: float = Field(gt=0)
    unit: str = Field(min_length=1)
    unit_price: float = Field(default=0, ge=0)
    tax_rate: float = Field(default=18, ge=0, le=100)
    discount: Discount | None = None
    line_total: float = 0
    notes: str | None = None
    product_image: str | None = None


class RequestedLineItem(BaseModel):
    product_id: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    description: str | None = None
    specifications: str | None = None
    quantity: float = Field(gt=0)
    unit: str = Field(min_length=1)
    notes: str | None = None


class LegacyProduct(BaseModel):
    product_id: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    quantity: str
    unit: str
    specifications: str | None = None


class Address(BaseModel):
    company_name: str | None = None
    contact_person: str
    street: str
    city: str
    state: str
    postal_code: str
    country: str
    phone: str | None = None
    email: str | None = None


class AdvancePayment(BaseModel):
    required: bool
    percentage: float | None = None
    amount: float | None = None


class BankDetails(BaseModel):
    bank_name: str
    account_number: str
    ifsc_code: str
    account_holder_name: str


class PaymentTerms(BaseModel):
    payment_method: str | None = None
    credit_days: int | None = Field(default=None, ge=0)
    advance_payment: AdvancePayment | None = None
    bank_details: BankDetails | None = None


class DeliveryTerms(BaseModel):
    incoterms: str | None = None
    delivery_location: str | None = None
    estimated_delivery_days: int | None = Field(default=None, ge=0)
    shipping_method: str | None = None
    packaging_type: str | None = None
    special_instructions: str | None = None


class TermsAndConditions(BaseModel):
    general_terms: str | None = None
    specific_terms: list[str] | None = None
    cancellation_policy: str | None = None
    dispute_resolution: str | None = None


class WarrantyInfo(BaseModel):
    warranty_period: str | None = None
    warranty_terms: str | None = None
    replacement_policy: str | None = None


class GstDetails(BaseModel):
    subtotal: float
    cgst_rate: float
    sgst_rate: float
    igst_rate: float
    cgst_amount: float
    sgst_amount: float
    igst_amount: float
    total_tax: float


class FinancialSummary(BaseModel):
    subtotal: float
    total_discount: float
    taxable_amount: float
    total_tax: float
    shipping_charges: float = 0
    other_charges: float = 0
    grand_total: float
    currency: str


class TaxDetail(BaseModel):
    tax_type: str
    tax_rate: float
    taxable_amount: float
    tax_amount: float


class AdminResponse(BaseModel):
    quoted_by: str
    quoted_at: datetime
    processing_notes: str | None = None
    internal_notes: str | None = None
    notes: str | None = None
    terms: str | None = None
    total_amount: float | None = None
    valid_until: datetime | None = None
    gst_details: GstDetails | None = None


class DigitalSignature(BaseModel):
    signed: bool = False
    signed_by: str | None = None
    signed_at: datetime | None = None
    signature_hash: str | None = None


class Attachment(BaseModel):
    file_name: str
    file_url: str
    file_type: str
    uploaded_at: datetime


class DocumentInfo(BaseModel):
    pdf_generated: bool = False
    pdf_url: str | None = None
    digital_signature: DigitalSignature | None = None
    attachments: list[Attachment] = Field(default_factory=list)


class BuyerInfo(BaseModel):
    user_id: str = Field(min_length=1)
    user_email: str = Field(min_length=3)
    user_name: str = Field(min_length=1)
    user_phone: str | None = None
    business_name: str | None = None


class QuotationCreate(BaseModel):
    buyer: BuyerInfo
    line_items: list[RequestedLineItem] | None = None
    products: list[LegacyProduct] | None = None
    billing_address: Address | None = None
    shipping_address: Address | None = None
    delivery_terms: DeliveryTerms | None = None
    delivery_location: str | None = None
    additional_requirements: str | None = None
    urgency: Urgency = "standard"

    @model_validator(mode="after")
    def _one_item_shape(self) -> QuotationCreate:
        if self.line_items is not None and self.products is not None:
            raise ValueError("provide either line_items or products, not both")
        return self


class QuotationCreated(BaseModel):
    id: UUID
    quotation_number: str
    status: QuotationStatus


class QuotationResponseUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    line_items: list[LineItem] | None = None
    currency: str | None = None
    payment_terms: PaymentTerms | None = None
    delivery_terms: DeliveryTerms | None = None
    terms_and_conditions: TermsAndConditions | None = None
    warranty_info: WarrantyInfo | None = None
    valid_until: datetime | None = None
    admin_notes: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class QuotationUpdate(BaseModel):
    """Non-lifecycle fields only; status, thread and financial fields go through their own operations."""

    model_config = ConfigDict(extra="forbid")

    user_phone: str | None = None
    business_name: str | None = None
    billing_address: Address | None = None
    shipping_address: Address | None = None
    additional_requirements: str | None = None
    urgency: Urgency | None = None
    row_version: int | None = Field(default=None, ge=1)


class _StatusCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    notes: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class StartProcessingCommand(_StatusCommand):
    status: Literal["processing"]


class QuoteCommand(_StatusCommand):
    status: Literal["quoted"]
    total_amount: float | None = Field(default=None, ge=0)
    valid_until: datetime | None = None
    terms: str | None = None
    gst_details: GstDetails | None = None


class AcceptCommand(_StatusCommand):
    status: Literal["accepted"]


class RejectCommand(_StatusCommand):
    status: Literal["rejected"]


class ExpireCommand(_StatusCommand):
    status: Literal["expired"]


class CloseCommand(_StatusCommand):
    status: Literal["closed"]


StatusCommand = Annotated[
    Union[StartProcessingCommand, QuoteCommand, AcceptCommand, RejectCommand, ExpireCommand, CloseCommand],
    Field(discriminator="status"),
]


class StatusChangeRequest(RootModel[StatusCommand]):
    pass


class ReopenRequest(BaseModel):
    notes: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class RevisionCreate(BaseModel):
    revision_notes: str | None = None


class RevisionCreated(BaseModel):
    revision_id: UUID
    version: int
    parent_quotation_id: UUID


class SignatureRequest(BaseModel):
    signature_hash: str = Field(min_length=1)


class QuotationRead(BaseModel):
    id: UUID
    quotation_number: str
    version: int
    parent_quotation_id: UUID | None
    root_quotation_id: UUID | None
    user_id: str
    user_email: str
    user_name: str
    user_phone: str | None
    business_name: str | None
    vendor_info: dict
    billing_address: Address | None
    shipping_address: Address | None
    line_items: list[LineItem]
    financial_summary: FinancialSummary | None
    tax_details: list[TaxDetail] | None
    payment_terms: PaymentTerms | None
    delivery_terms: DeliveryTerms | None
    terms_and_conditions: TermsAndConditions | None
    warranty_info: WarrantyInfo | None
    status: QuotationStatus
    thread_status: ThreadStatus
    valid_from: datetime | None
    valid_until: datetime | None
    admin_response: AdminResponse | None
    document_info: DocumentInfo | None
    closure_requested_by: str | None
    closure_requested_at: datetime | None
    closure_reason: str | None
    user_permission_to_close: bool | None
    user_permission_granted_at: datetime | None
    closure_rejected_at: datetime | None
    closure_rejection_reason: str | None
    closed_by: str | None
    closed_at: datetime | None
    additional_requirements: str | None
    urgency: Urgency
    created_by: str | None
    last_modified_by: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    unread_message_count: int | None = None


class QuotationPage(BaseModel):
    quotations: list[QuotationRead]
    total: int
    has_more: bool


class QuotationStats(BaseModel):
    total: int
    by_status: dict[str, int]
    recent_requests: int
    monthly_requests: int
    total_value: float
    average_value: float
    conversion_rate: float
    expiring_quotations: int


class ExpirySweepResult(BaseModel):
    expired_ids: list[UUID]
    count: int


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=10000)


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quotation_id: UUID
    author_id: str
    author_name: str
    author_role: AuthorRole
    content: str
    message_type: MessageType
    is_read_by_user: bool
    is_read_by_admin: bool
    read_by_user_at: datetime | None
    read_by_admin_at: datetime | None
    created_at: datetime
    updated_at: datetime


class MarkReadRequest(BaseModel):
    message_ids: list[UUID] | None = None


class MarkReadResult(BaseModel):
    updated: int


class UnreadCount(BaseModel):
    quotation_id: UUID
    reader_role: AuthorRole
    count: int


class ClosureRequest(BaseModel):
    reason: str | None = None


class ClosureRejection(BaseModel):
    reason: str | None = None


class ThreadTransitionResult(BaseModel):
    quotation_id: UUID
    thread_status: ThreadStatus
    message_id: UUID


class UnreadThread(BaseModel):
    quotation: QuotationRead
    unread_count: int
    last_message: MessageRead
