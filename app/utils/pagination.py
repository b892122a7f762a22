"""
Pagination utilities
"""

from pydantic import BaseModel, Field

class PaginationParams(BaseModel):
    """Page and page size taken from the query string"""
    page: int = Field(1, ge=1, description="Page number")
    limit: int = Field(20, ge=1, le=100, description="Page size")
