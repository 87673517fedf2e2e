from __future__ import annotations

from pydantic import BaseModel, ConfigDict

LAGO_MAX_BATCH_SIZE = 100


class LagoEvent(BaseModel):
    transaction_id: str
    external_subscription_id: str
    code: str
    timestamp: int
    properties: dict[str, str]


class LagoCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lago_id: str
    external_id: str
    name: str | None = None
    email: str | None = None


class LagoSubscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lago_id: str
    external_id: str
    external_customer_id: str | None = None
    name: str | None = None
    plan_code: str | None = None
    status: str | None = None


class LagoCustomerList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customers: list[LagoCustomer]


class LagoSubscriptionList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscriptions: list[LagoSubscription]
