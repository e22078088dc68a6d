from typing import List, Optional
from pydantic import BaseModel

class Person(BaseModel):
    name: str
    title: Optional[str] = None
    organization: Optional[str] = None
    relationships: List[str] = []
    mentions: int = 1
    context: List[str] = []

class Company(BaseModel):
    name: str
    industry: Optional[str] = None
    location: Optional[str] = None
    type: str = "unknown"
    mentions: int = 1
    context: List[str] = []

class Product(BaseModel):
    name: str
    company: Optional[str] = None
    features: List[str] = []
    price: Optional[str] = None
    mentions: int = 1
    context: List[str] = []

class ExtractedEntities(BaseModel):
    """
    Output of an EntityExtractor: each list sorted by descending mention count.
    """
    people: List[Person] = []
    companies: List[Company] = []
    products: List[Product] = []
