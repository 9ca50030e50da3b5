from pydantic import BaseModel, ConfigDict, Field


class DestinationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
