"""
Variant assignment API schemas.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from core.domain import Case


class AssignmentResponse(BaseModel):
    """Assignment for one product page view.

    ``active`` is False when the product has no running test; the
    storefront then leaves the gallery untouched.
    """

    active: bool = Field(..., description="Whether an active test applies")
    test_id: Optional[str] = Field(None, description="Test identifier")
    product_id: Optional[str] = Field(None, description="Product the test runs on")
    case: Optional[Case] = Field(None, description="Assigned case")
    images: List[str] = Field(default_factory=list, description="Ordered image URLs for the case")
    forced: bool = Field(False, description="Case was forced by the override parameter")
    reason: Optional[str] = Field(None, description="Why no test applies")
