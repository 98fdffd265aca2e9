# schemas.py
from pydantic import BaseModel, Field, constr
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional


class UserBase(BaseModel):
    username: constr(min_length=3, max_length=100)


class UserCreate(UserBase):
    password: constr(min_length=1)


class UserLogin(UserBase):
    password: str


class UserOut(UserBase):
    id: int
    email: Optional[str] = None
    currency: str
    budget: Decimal

    class Config:
        from_attributes = True


class UserUpdate(BaseModel):
    currency: Optional[constr(min_length=3, max_length=3)] = None
    budget: Optional[Decimal] = Field(default=None, ge=0)
    password: Optional[constr(min_length=1)] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ExpenseCreate(BaseModel):
    title: constr(min_length=1)
    amount: Decimal = Field(ge=0)
    category: constr(min_length=1)
    date: Optional[datetime] = None
    # Comma-delimited, e.g. "food, work"
    tags: Optional[str] = None
    note: Optional[str] = None
    currency: Optional[constr(min_length=3, max_length=3)] = None
    recurring: bool = False
    next_occurrence: Optional[datetime] = None


class ExpenseUpdate(BaseModel):
    title: Optional[constr(min_length=1)] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[constr(min_length=1)] = None
    date: Optional[datetime] = None
    tags: Optional[str] = None
    note: Optional[str] = None
    currency: Optional[constr(min_length=3, max_length=3)] = None
    recurring: Optional[bool] = None
    next_occurrence: Optional[datetime] = None


class ExpenseOut(BaseModel):
    id: int
    title: str
    amount: Decimal
    category: str
    date: datetime
    tags: List[str]
    note: Optional[str] = None
    attachment: Optional[str] = None
    currency: str
    recurring: bool
    next_occurrence: Optional[datetime] = None
    template_id: Optional[int] = None

    class Config:
        from_attributes = True


class ExpenseFilter(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category: Optional[str] = None


class Forecast(BaseModel):
    average: float


class Message(BaseModel):
    message: str
