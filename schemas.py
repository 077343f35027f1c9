import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    type: TransactionType
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    note: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    note: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
