from typing import List
from pydantic import BaseModel, Field

class TemplateSection(BaseModel):
    id: str
    title: str
    description: str = ""
    required: bool = True

class ReportTemplate(BaseModel):
    """
    A named bundle of search-query patterns, report sections and a synthesis prompt.
    Search queries contain a "{query}" placeholder for the user's query.
    """
    id: str
    name: str
    description: str = ""
    sections: List[TemplateSection] = Field(..., min_length=1)
    search_queries: List[str] = Field(..., min_length=1)
    analysis_prompt: str

    def render_search_queries(self, query: str) -> List[str]:
        """Substitutes the raw user query into every search-query template."""
        return [template.replace("{query}", query) for template in self.search_queries]
