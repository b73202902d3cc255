# app/transport/schemas.py
from pydantic import BaseModel, Field, StrictInt


class LocationIn(BaseModel):
    lat: float
    lng: float
    address: str = Field(min_length=1, max_length=300)


class TaskIn(BaseModel):
    id: str | None = Field(default=None, max_length=64)
    name: str = Field(max_length=120)
    description: str | None = Field(default=None, max_length=1000)


class CreateJobIn(BaseModel):
    urgency: str = "NORMAL"
    price_amount: StrictInt
    location: LocationIn
    tasks: list[TaskIn] = Field(min_length=1, max_length=50)


class ClaimJobIn(BaseModel):
    job_id: str = Field(min_length=1, max_length=64)


class ProofIn(BaseModel):
    # Malformed entries are filtered by the coordinator, not rejected here
    proof_urls: list[str] = Field(default_factory=list, max_length=100)


class CancelJobIn(BaseModel):
    reason: str = Field(default="", max_length=500)


class CreateJobOut(BaseModel):
    job: dict
    client_secret: str
