from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class MachineCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(min_length=1)
    reference: str = Field(min_length=1)
    serialNumber: str = Field(min_length=1, validation_alias=AliasChoices("serialNumber", "numSerie"))
    inventoryNumber: str = Field(min_length=1, validation_alias=AliasChoices("inventoryNumber", "numInventaire"))


class MachineUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Optional[str] = None
    reference: Optional[str] = None
    serialNumber: Optional[str] = Field(default=None, validation_alias=AliasChoices("serialNumber", "numSerie"))
    inventoryNumber: Optional[str] = Field(default=None, validation_alias=AliasChoices("inventoryNumber", "numInventaire"))
    status: Optional[str] = None


class AssignDestinationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    destinationId: Optional[int] = None
    destinationName: Optional[str] = None

    @model_validator(mode="after")
    def _require_target(self):
        if self.destinationId is None and not (self.destinationName or "").strip():
            raise ValueError("destinationId or destinationName is required.")
        return self


class BulkDeleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ids: List[int] = []
