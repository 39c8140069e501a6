"""
Nightscout REST API models.
"""
from typing import Optional, Union
from pydantic import BaseModel, Field, ConfigDict


class NightscoutEntry(BaseModel):
    """
    Model for a Nightscout sensor glucose entry (`/api/v1/entries`).
    """
    model_config = ConfigDict(extra="ignore")

    date: Optional[float] = Field(default=None, description="Epoch milliseconds of the reading")
    sgv: Optional[float] = Field(default=None, description="Sensor glucose value in mg/dL")
    dateString: Optional[str] = Field(default=None, description="ISO timestamp of the reading")
    type: Optional[str] = Field(default=None, description="Entry type (sgv, mbg, cal)")
    direction: Optional[str] = Field(default=None, description="Trend arrow name")
    device: Optional[str] = Field(default=None, description="Uploading device")


class NightscoutTreatment(BaseModel):
    """
    Model for a Nightscout treatment (`/api/v1/treatments`).
    """
    model_config = ConfigDict(extra="ignore")

    mills: Optional[float] = Field(default=None, description="Epoch milliseconds of the event")
    created_at: Optional[str] = Field(default=None, description="ISO creation timestamp")
    timestamp: Optional[Union[str, float]] = Field(default=None, description="ISO or epoch timestamp")
    eventType: Optional[str] = Field(default=None, description="Event type, e.g. Meal Bolus")
    insulin: Optional[float] = Field(default=None, description="Insulin units")
    amount: Optional[float] = Field(default=None, description="Insulin units (legacy field)")
    carbs: Optional[float] = Field(default=None, description="Carbohydrates in grams")


class LoopIob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    iob: Optional[float] = Field(default=None, description="Total insulin on board")
    bolusIob: Optional[float] = Field(default=None, description="Bolus insulin on board")
    basalIob: Optional[float] = Field(default=None, description="Basal insulin on board")
    timestamp: Optional[str] = Field(default=None, description="Computation timestamp")


class LoopCob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cob: Optional[float] = Field(default=None, description="Carbs on board")
    timestamp: Optional[str] = Field(default=None, description="Computation timestamp")


class LoopStatus(BaseModel):
    """
    Loop (iOS) payload under `devicestatus.loop`.
    """
    model_config = ConfigDict(extra="ignore")

    iob: Optional[LoopIob] = Field(default=None, description="Insulin on board")
    cob: Optional[LoopCob] = Field(default=None, description="Carbs on board")
    timestamp: Optional[str] = Field(default=None, description="Loop run timestamp")


class OpenApsIob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    iob: Optional[float] = Field(default=None, description="Total insulin on board")
    bolusiob: Optional[float] = Field(default=None, description="Bolus insulin on board")
    basaliob: Optional[float] = Field(default=None, description="Basal insulin on board")


class OpenApsMeal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cob: Optional[float] = Field(default=None, description="Carbs on board")


class OpenApsStatus(BaseModel):
    """
    OpenAPS / AAPS payload under `devicestatus.openaps`.
    """
    model_config = ConfigDict(extra="ignore")

    iob: Optional[OpenApsIob] = Field(default=None, description="Insulin on board")
    meal: Optional[OpenApsMeal] = Field(default=None, description="Meal data")
    cob: Optional[OpenApsMeal] = Field(default=None, description="Carbs on board")


class NightscoutDeviceStatus(BaseModel):
    """
    Model for a Nightscout device status (`/api/v1/devicestatus`).
    """
    model_config = ConfigDict(extra="ignore")

    mills: Optional[float] = Field(default=None, description="Epoch milliseconds of the upload")
    created_at: Optional[str] = Field(default=None, description="ISO creation timestamp")
    loop: Optional[LoopStatus] = Field(default=None, description="Loop payload")
    openaps: Optional[OpenApsStatus] = Field(default=None, description="OpenAPS payload")
    iob: Optional[float] = Field(default=None, description="Top-level insulin on board")
    cob: Optional[float] = Field(default=None, description="Top-level carbs on board")
