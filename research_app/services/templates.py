import logging
from typing import Dict, List, Optional, Iterable

from research_app.models.template import ReportTemplate, TemplateSection

logger = logging.getLogger(__name__)


def _sections(*rows) -> List[TemplateSection]:
    # rows are (id, title, description, required)
    return [TemplateSection(id=r[0], title=r[1], description=r[2], required=r[3]) for r in rows]


BUILTIN_TEMPLATES: List[ReportTemplate] = [
    ReportTemplate(
        id="company-profile",
        name="Company Profile",
        description="Comprehensive analysis of a company including history, products, leadership, and market position",
        sections=_sections(
            ("overview", "Company Overview", "Basic company information", True),
            ("products", "Products & Services", "What the company offers", True),
            ("leadership", "Leadership Team", "Key executives and founders", False),
            ("financials", "Financial Information", "Revenue, funding, valuation", False),
            ("market", "Market Position", "Competitors and market share", True),
        ),
        search_queries=[
            "{query} company overview",
            "{query} products services",
            "{query} CEO founder leadership team",
            "{query} revenue funding valuation",
            "{query} competitors market share",
            "{query} news press release",
        ],
        analysis_prompt=(
            "Build a company profile covering what the company does, when and where it was founded, "
            "its products and services, leadership, available financial information, competitive "
            "position, recent news, and its main strengths and weaknesses."
        ),
    ),
    ReportTemplate(
        id="competitor-analysis",
        name="Competitor Analysis",
        description="Deep dive comparison between companies in the same market",
        sections=_sections(
            ("overview", "Market Overview", "Industry landscape", True),
            ("competitors", "Key Competitors", "Main players in the market", True),
            ("comparison", "Feature Comparison", "Side-by-side analysis", True),
            ("pricing", "Pricing Analysis", "Price comparison", True),
            ("swot", "SWOT Analysis", "Strengths, weaknesses, opportunities, threats", True),
        ),
        search_queries=[
            "{query} competitors comparison",
            "{query} vs alternatives",
            "{query} market share industry",
            "{query} pricing plans",
            "{query} reviews comparison",
            "{query} strengths weaknesses",
        ],
        analysis_prompt=(
            "Identify the market, list the main competitors, compare their features and pricing side "
            "by side, give a SWOT view of each, and finish with market trends and recommended "
            "competitive strategies."
        ),
    ),
    ReportTemplate(
        id="market-research",
        name="Market Research",
        description="Industry analysis including size, trends, and opportunities",
        sections=_sections(
            ("overview", "Market Overview", "Market definition and scope", True),
            ("size", "Market Size", "TAM, SAM, SOM", True),
            ("trends", "Market Trends", "Current and emerging trends", True),
            ("drivers", "Growth Drivers", "Factors driving market growth", True),
            ("challenges", "Challenges & Barriers", "Market challenges", True),
            ("opportunities", "Opportunities", "Untapped opportunities", True),
        ),
        search_queries=[
            "{query} market size TAM SAM",
            "{query} industry trends",
            "{query} market growth forecast",
            "{query} industry challenges barriers",
            "{query} market opportunities",
            "{query} industry report statistics",
        ],
        analysis_prompt=(
            "Define the market and its scope, estimate its size (TAM, SAM, SOM where possible), "
            "describe current and emerging trends, growth drivers, barriers to entry and open "
            "opportunities, and close with an outlook. Quote statistics where the sources give them."
        ),
    ),
    ReportTemplate(
        id="person-profile",
        name="Person/Executive Profile",
        description="Research on individuals including background, career, and influence",
        sections=_sections(
            ("bio", "Biography", "Personal and professional background", True),
            ("career", "Career History", "Professional journey", True),
            ("achievements", "Key Achievements", "Notable accomplishments", True),
            ("network", "Professional Network", "Connections and affiliations", False),
            ("media", "Media Presence", "Interviews, articles, speeches", False),
        ),
        search_queries=[
            "{query} biography background",
            "{query} career history experience",
            "{query} achievements awards",
            "{query} interview speech",
            "{query} linkedin profile",
            "{query} net worth investments",
        ],
        analysis_prompt=(
            "Profile this person: education and background, career progression, key achievements, "
            "public statements and media appearances, affiliations, and influence in their field. "
            "Only report verifiable facts."
        ),
    ),
    ReportTemplate(
        id="product-analysis",
        name="Product Analysis",
        description="Deep analysis of a product including features, pricing, and reviews",
        sections=_sections(
            ("overview", "Product Overview", "What the product is", True),
            ("features", "Features", "Key features and capabilities", True),
            ("pricing", "Pricing", "Pricing plans and tiers", True),
            ("reviews", "User Reviews", "Customer feedback", True),
            ("alternatives", "Alternatives", "Similar products", True),
        ),
        search_queries=[
            "{query} features capabilities",
            "{query} pricing plans cost",
            "{query} reviews ratings",
            "{query} pros cons",
            "{query} alternatives vs",
            "{query} tutorial how to use",
        ],
        analysis_prompt=(
            "Describe the product and its purpose, its key features, pricing structure, the sentiment "
            "of user reviews, pros and cons, alternatives, and ideal customers. Stay objective."
        ),
    ),
    ReportTemplate(
        id="industry-overview",
        name="Industry Overview",
        description="Comprehensive overview of an entire industry",
        sections=_sections(
            ("definition", "Industry Definition", "What the industry encompasses", True),
            ("landscape", "Competitive Landscape", "Key players", True),
            ("trends", "Industry Trends", "Current and future trends", True),
            ("regulations", "Regulations", "Legal and regulatory environment", False),
            ("technology", "Technology", "Tech driving the industry", True),
            ("outlook", "Future Outlook", "Predictions and forecasts", True),
        ),
        search_queries=[
            "{query} industry overview definition",
            "{query} top companies market leaders",
            "{query} industry trends",
            "{query} regulations compliance",
            "{query} technology innovation",
            "{query} industry forecast prediction",
        ],
        analysis_prompt=(
            "Define the industry and its segments, map leaders, challengers and niche players, and "
            "cover the major trends, the regulatory environment, technological innovation, risks and "
            "the future outlook."
        ),
    ),
    ReportTemplate(
        id="swot-analysis",
        name="SWOT Analysis",
        description="Strengths, Weaknesses, Opportunities, Threats analysis",
        sections=_sections(
            ("strengths", "Strengths", "Internal advantages", True),
            ("weaknesses", "Weaknesses", "Internal disadvantages", True),
            ("opportunities", "Opportunities", "External opportunities", True),
            ("threats", "Threats", "External threats", True),
            ("strategy", "Strategic Recommendations", "Actionable strategies", True),
        ),
        search_queries=[
            "{query} strengths advantages",
            "{query} weaknesses challenges problems",
            "{query} opportunities growth",
            "{query} threats risks competition",
            "{query} strategy recommendations",
        ],
        analysis_prompt=(
            "Perform a SWOT analysis. Strengths and weaknesses are internal to the subject; "
            "opportunities and threats come from the market and environment. End with strategic "
            "recommendations that follow from the analysis."
        ),
    ),
    ReportTemplate(
        id="due-diligence",
        name="Due Diligence Report",
        description="Investment-grade research for business evaluation",
        sections=_sections(
            ("company", "Company Profile", "Basic company information", True),
            ("financials", "Financial Analysis", "Revenue, profitability, funding", True),
            ("legal", "Legal & Compliance", "Legal structure, lawsuits, compliance", True),
            ("market", "Market Analysis", "Market position and competition", True),
            ("team", "Team Assessment", "Leadership and key personnel", True),
            ("risks", "Risk Assessment", "Identified risks", True),
            ("recommendation", "Investment Recommendation", "Final assessment", True),
        ),
        search_queries=[
            "{query} company overview background",
            "{query} revenue funding valuation financials",
            "{query} lawsuits legal issues compliance",
            "{query} market share competitors",
            "{query} CEO founder team linkedin",
            "{query} risks challenges concerns",
            "{query} reviews reputation",
            "{query} news press recent",
        ],
        analysis_prompt=(
            "Conduct due diligence: company profile and business model, financials and funding "
            "history, legal structure and pending litigation, market position, leadership, and "
            "business, market, operational and regulatory risks. Finish with key concerns and a "
            "recommendation, noting that this is not financial advice."
        ),
    ),
]


class TemplateRegistry:
    """
    Read-only lookup of report templates by id.
    """
    def __init__(self, templates: Optional[Iterable[ReportTemplate]] = None):
        source = BUILTIN_TEMPLATES if templates is None else templates
        self._templates: Dict[str, ReportTemplate] = {t.id: t for t in source}
        logger.debug(f"Template registry loaded with {len(self._templates)} templates.")

    def get(self, template_id: str) -> Optional[ReportTemplate]:
        return self._templates.get(template_id)

    def list(self) -> List[ReportTemplate]:
        return list(self._templates.values())

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates
