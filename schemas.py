from datetime import date
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import Frequency, TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)


class TransactionIn(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    description: str = Field(..., min_length=1, max_length=500)
    date: date
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=1000)


class RecurringTemplateIn(BaseModel):
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    description: str = Field(..., min_length=1, max_length=500)
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    start_date: date
    end_date: Optional[date] = None
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=1000)


class ConnectIn(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=120)
    institution_id: str = Field(..., min_length=1, max_length=120)
    institution_name: str = Field(..., min_length=1, max_length=120)


class SyncIn(BaseModel):
    connection_id: int
    force: bool = False
    days: int = Field(default=7, ge=1, le=90)


class DisconnectIn(BaseModel):
    connection_id: Union[int, str]


# Provider wire format. Field names follow the aggregator's camelCase JSON.


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProviderCreditData(_ProviderModel):
    available_credit_limit: Optional[float] = Field(
        default=None, alias="availableCreditLimit"
    )
    credit_limit: Optional[float] = Field(default=None, alias="creditLimit")
    minimum_payment: Optional[float] = Field(default=None, alias="minimumPayment")


class ProviderAccount(_ProviderModel):
    id: str
    type: Optional[str] = None
    subtype: Optional[str] = None
    name: Optional[str] = None
    marketing_name: Optional[str] = Field(default=None, alias="marketingName")
    balance: Optional[float] = None
    currency_code: Optional[str] = Field(default=None, alias="currencyCode")
    item_id: Optional[str] = Field(default=None, alias="itemId")
    credit_data: Optional[ProviderCreditData] = Field(default=None, alias="creditData")


class ProviderPaymentData(_ProviderModel):
    payer: Optional[str] = None
    receiver: Optional[str] = None
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    reference_number: Optional[str] = Field(default=None, alias="referenceNumber")


class ProviderCreditCardMetadata(_ProviderModel):
    installment_number: Optional[int] = Field(default=None, alias="instalmentNumber")
    total_installments: Optional[int] = Field(default=None, alias="totalInstallments")
    payee_name: Optional[str] = Field(default=None, alias="payeeName")
    mcc: Optional[str] = None


class ProviderTransaction(_ProviderModel):
    id: str
    description: Optional[str] = None
    description_raw: Optional[str] = Field(default=None, alias="descriptionRaw")
    amount: float
    date: str
    category: Optional[str] = None
    account_id: Optional[str] = Field(default=None, alias="accountId")
    provider_code: Optional[str] = Field(default=None, alias="providerCode")
    status: Optional[str] = None
    payment_data: Optional[ProviderPaymentData] = Field(
        default=None, alias="paymentData"
    )
    credit_card_metadata: Optional[ProviderCreditCardMetadata] = Field(
        default=None, alias="creditCardMetadata"
    )


class ProviderInstitution(_ProviderModel):
    id: Union[int, str]
    name: str
    type: Optional[str] = None
    country: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    primary_color: Optional[str] = Field(default=None, alias="primaryColor")


# Webhooks


class WebhookError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = None
    code: Optional[str] = None


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    error: Optional[WebhookError] = None


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., min_length=1)


class WebhookEvent(WebhookEnvelope):
    data: WebhookData
