from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

TransactionType = Literal["ACTIVE", "ALL"]
PeriodType = Literal["ALL", "FROM_TO", "LAST_10", "LAST_30", "LAST_90", "TODAY"]


class _SteveModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


class OcppTag(_SteveModel):
    id_tag: str = Field(alias="idTag")
    ocpp_tag_pk: int = Field(alias="ocppTagPk")
    note: str | None = None
    parent_id_tag: str | None = Field(default=None, alias="parentIdTag")
    expiry_date: str | None = Field(default=None, alias="expiryDate")
    # -1 = unlimited, 0 = blocked, None behaves as unlimited
    max_active_transaction_count: int | None = Field(default=None, alias="maxActiveTransactionCount")

    def to_form(self) -> dict[str, object]:
        """Complete OcppTagForm body; the backend rejects partial updates."""
        form: dict[str, object] = {
            "idTag": self.id_tag,
            "maxActiveTransactionCount": self.max_active_transaction_count,
        }
        if self.note is not None:
            form["note"] = self.note
        if self.parent_id_tag is not None:
            form["parentIdTag"] = self.parent_id_tag
        if self.expiry_date is not None:
            form["expiryDate"] = self.expiry_date
        return form


class SteveTransaction(_SteveModel):
    id: int
    charge_box_id: str = Field(alias="chargeBoxId")
    charge_box_pk: int | None = Field(default=None, alias="chargeBoxPk")
    connector_id: int | None = Field(default=None, alias="connectorId")
    ocpp_id_tag: str = Field(alias="ocppIdTag")
    ocpp_tag_pk: int | None = Field(default=None, alias="ocppTagPk")
    start_timestamp: str = Field(alias="startTimestamp")
    start_value: str = Field(alias="startValue")
    stop_timestamp: str | None = Field(default=None, alias="stopTimestamp")
    stop_value: str | None = Field(default=None, alias="stopValue")
    stop_event_actor: str | None = Field(default=None, alias="stopEventActor")
    stop_reason: str | None = Field(default=None, alias="stopReason")
    latest_meter_value: str | None = Field(default=None, alias="latestMeterValue")


class ChargeBox(_SteveModel):
    charge_box_id: str = Field(alias="chargeBoxId")
    charge_box_pk: int = Field(alias="chargeBoxPk")


class TransactionFilters(BaseModel):
    charge_box_id: str | None = None
    from_ts: str | None = None
    to_ts: str | None = None
    ocpp_id_tag: str | None = None
    transaction_pk: int | None = None
    period_type: PeriodType | None = None
    type: TransactionType | None = None

    def to_query(self) -> dict[str, str]:
        query = {
            "chargeBoxId": self.charge_box_id,
            "from": self.from_ts,
            "to": self.to_ts,
            "ocppIdTag": self.ocpp_id_tag,
            "transactionPk": str(self.transaction_pk) if self.transaction_pk is not None else None,
            "periodType": self.period_type,
            "type": self.type,
        }
        return {key: value for key, value in query.items() if value is not None}
