from pydantic import BaseModel, Field, field_validator
from typing import List, Optional

from met_analysis import config


class ElstonParams(BaseModel):
    traits: List[str] = Field(..., min_length=1)
    geno_col: str = Field(..., max_length=100)
    env_col: Optional[str] = Field(None, max_length=100)
    rep_col: Optional[str] = Field(None, max_length=100)
    means: str = Field("single", pattern="^(single|fitted)$")
    model: str = Field("gxe", pattern="^(gxe|g\\+e)$")
    lb: str = Field("min", pattern="^(min|adjusted-min)$")

    @field_validator("traits")
    @classmethod
    def check_trait_names(cls, v):
        for name in v:
            if len(name) > 100:
                raise ValueError(f"Trait column name too long: {name[:50]}...")
        return v

    @field_validator("env_col", "rep_col")
    @classmethod
    def blank_is_none(cls, v):
        return v or None


class TaiParams(BaseModel):
    trait_col: str = Field(..., max_length=100)
    geno_col: str = Field(..., max_length=100)
    env_col: str = Field(..., max_length=100)
    rep_col: str = Field(..., max_length=100)
    maxp: float = Field(config.TAI_MAX_MISSING, ge=0, lt=1)
    conf: float = Field(config.TAI_CONFIDENCE, gt=0, lt=1)
    title: Optional[str] = Field(None, max_length=200)
