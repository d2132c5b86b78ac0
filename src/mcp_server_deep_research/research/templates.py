"""Plan templates: what the engine plans, which queries it starts with, and how the report is shaped.

Free-form, company and market research all run on the same ResearchMachine;
only the template differs.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..exceptions import ConfigurationError
from ..text import parse_json_list
from ..timeouts import DepthPolicy, SearchDepth
from .models import ResearchKind, ResearchRequest
from .prompts import (
    INVESTMENT_RESEARCH_SECTIONS,
    MARKET_REPORT_REQUIREMENT,
    SECTION_PRIORITIES,
    get_company_goal,
    get_company_plan_prompt,
    get_company_report_requirement,
    get_market_goal,
    get_report_plan_prompt,
    get_serp_queries_prompt,
)

if TYPE_CHECKING:
    from .machine import ResearchMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskStub:
    """A query the engine should run, before it becomes a ResearchTask."""

    query: str
    research_goal: str = ""
    section: str | None = None


class _QueryItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: str
    research_goal: str = Field(default="", alias="researchGoal")


_QUERY_LIST = TypeAdapter(list[_QueryItem | str])


def parse_task_stubs(text: str, fallback: bool = True) -> list[TaskStub]:
    """Parse a model's query list.

    With ``fallback`` an unusable answer is read as one query per line; without it, as no queries.
    """
    try:
        items = _QUERY_LIST.validate_python(parse_json_list(text))
        return [
            TaskStub(query=item.strip()) if isinstance(item, str) else TaskStub(query=item.query.strip(), research_goal=item.research_goal)
            for item in items
            if (item.strip() if isinstance(item, str) else item.query.strip())
        ]
    except (ValueError, ValidationError):
        logger.warning(f"Failed to parse query list from model output: {text[:200]}")
        if not fallback:
            return []

    # Fallback: split by newlines and clean up
    lines = [line.strip().strip("-").strip("*").strip('"').strip() for line in text.split("\n") if line.strip()]
    return [TaskStub(query=line) for line in lines if len(line) > 10 and not line.startswith(("[", "{", "```"))]


class ResearchTemplate:
    """Free-form research: the thinking model plans and writes its own queries."""

    kind = ResearchKind.FREE_FORM

    def __init__(self, request: ResearchRequest, policy: DepthPolicy):
        self.request = request
        self.policy = policy

    @property
    def goal(self) -> str:
        return self.request.query or ""

    @property
    def title(self) -> str:
        return self.goal[:80]

    def plan_prompt(self) -> str:
        return get_report_plan_prompt(self.goal)

    async def initial_tasks(self, machine: "ResearchMachine") -> list[TaskStub]:
        return await machine.generate_queries(get_serp_queries_prompt(machine.plan, self.policy.max_queries))

    def report_requirement(self) -> str | None:
        return None

    def metadata(self) -> dict[str, Any]:
        return {"query": self.request.query}


class CompanyResearchTemplate(ResearchTemplate):
    """Investment research on one company with fixed query templates per depth."""

    kind = ResearchKind.COMPANY

    @property
    def company(self) -> str:
        return self.request.company_name or ""

    @property
    def goal(self) -> str:
        r = self.request
        return get_company_goal(self.company, r.company_website, r.industry, r.competitors, r.additional_context)

    @property
    def title(self) -> str:
        return f"{self.company} Research Report"

    @property
    def sections(self) -> list[str]:
        """Report sections for this depth: high priority only for fast, high and medium for medium, all for deep."""
        allowed = {
            SearchDepth.FAST: {"high"},
            SearchDepth.MEDIUM: {"high", "medium"},
            SearchDepth.DEEP: {"high", "medium", "low"},
        }[self.policy.depth]
        return [title for key, title in INVESTMENT_RESEARCH_SECTIONS.items() if SECTION_PRIORITIES[key] in allowed]

    def plan_prompt(self) -> str:
        return get_company_plan_prompt(self.goal, self.sections)

    async def initial_tasks(self, machine: "ResearchMachine") -> list[TaskStub]:
        match self.policy.depth:
            case SearchDepth.FAST:
                stubs = self._fast_queries()
            case SearchDepth.MEDIUM:
                stubs = self._medium_queries()
            case _:
                stubs = self._deep_queries()
        return stubs[: self.policy.max_queries]

    def _fast_queries(self) -> list[TaskStub]:
        name = self.company
        return [
            TaskStub(f"{name} company overview business model", f"What {name} does, its products and how it makes money", "Company Overview"),
            TaskStub(f"{name} competitors market position", f"Who {name} competes with and how it is positioned", "Competitive Analysis"),
            TaskStub(f"{name} latest news", f"Material recent developments at {name}", "Bull and Bear Case"),
        ]

    def _medium_queries(self) -> list[TaskStub]:
        r = self.request
        name = self.company
        stubs = [TaskStub(f"{name} company overview", f"What {name} does and its business model", "Company Overview")]
        if r.company_website:
            domain = r.company_website.removeprefix("https://").removeprefix("http://").split("/")[0]
            stubs.append(TaskStub(f"site:{domain} {name}", f"First-party description of {name}'s products", "Company Overview"))
        stubs.append(TaskStub(f"{name} news", f"Recent news about {name}", "Recent News"))
        for competitor in r.competitors[:3]:
            stubs.append(TaskStub(f"{name} vs {competitor}", f"How {name} compares with {competitor}", "Competitive Analysis"))
        if not r.competitors:
            stubs.append(TaskStub(f"{name} competitors", f"Main competitors of {name}", "Competitive Analysis"))
        stubs.append(TaskStub(f"{name} funding revenue valuation", f"Funding history, revenue and valuation of {name}", "Bull and Bear Case"))
        if r.industry:
            stubs.append(TaskStub(f"{r.industry} market size growth", f"Size and growth of the {r.industry} market", "Market Background"))
        stubs.append(TaskStub(f"{name} customers", f"Who buys from {name} and through which channels", "Customers, Buyers and Channels"))
        return stubs

    def _deep_queries(self) -> list[TaskStub]:
        r = self.request
        name = self.company
        industry = r.industry or "its industry"
        per_section: dict[str, list[str]] = {
            "companyOverview": [f"{name} company overview history", f"{name} business model products"],
            "competitiveAnalysis": [f"{name} vs {c}" for c in r.competitors[:5]] or [f"{name} competitors", f"{name} market share"],
            "bullBearCase": [f"{name} growth prospects", f"{name} risks criticism"],
            "marketBackground": [f"{industry} market size growth", f"{industry} market trends"],
            "customersBuyersChannels": [f"{name} customers case studies", f"{name} sales channels partnerships"],
            "recentNews": [f"{name} news", f"{name} announcement"],
            "productAndTechnology": [f"{name} technology platform", f"{name} product roadmap"],
            "financialsAndFunding": [f"{name} funding round investors", f"{name} revenue"],
            "managementTeam": [f"{name} CEO founders leadership team"],
            "risksAndChallenges": [f"{name} lawsuit regulatory challenges"],
        }
        if r.company_website:
            domain = r.company_website.removeprefix("https://").removeprefix("http://").split("/")[0]
            per_section["companyOverview"].append(f"site:{domain}")

        order = {"high": 0, "medium": 1, "low": 2}
        keys = sorted(INVESTMENT_RESEARCH_SECTIONS, key=lambda key: order[SECTION_PRIORITIES[key]])
        return [
            TaskStub(query, f"{INVESTMENT_RESEARCH_SECTIONS[key]} for {name}", INVESTMENT_RESEARCH_SECTIONS[key])
            for key in keys
            for query in per_section[key]
        ]

    def report_requirement(self) -> str | None:
        return get_company_report_requirement(self.company, self.sections)

    def metadata(self) -> dict[str, Any]:
        return {"companyName": self.company, "searchDepth": self.policy.depth.value}


class MarketResearchTemplate(ResearchTemplate):
    kind = ResearchKind.MARKET

    @property
    def goal(self) -> str:
        return get_market_goal(self.request.query or "", self.request.industry, self.request.timeframe)

    def report_requirement(self) -> str | None:
        return MARKET_REPORT_REQUIREMENT

    def metadata(self) -> dict[str, Any]:
        return {"query": self.request.query, "industry": self.request.industry, "timeframe": self.request.timeframe}


def create_template(request: ResearchRequest, policy: DepthPolicy) -> ResearchTemplate:
    """Pick the template for a single-subject request.

    Raises:
        ConfigurationError: If the request lacks its subject or is a bulk request.
    """
    match request.kind:
        case ResearchKind.COMPANY:
            if not request.company_name:
                raise ConfigurationError("Company research needs a company name")
            return CompanyResearchTemplate(request, policy)
        case ResearchKind.MARKET:
            if not request.query:
                raise ConfigurationError("Market research needs a query")
            return MarketResearchTemplate(request, policy)
        case ResearchKind.FREE_FORM:
            if not request.query:
                raise ConfigurationError("Research needs a query")
            return ResearchTemplate(request, policy)
        case _:
            raise ConfigurationError(f"No single-subject template for {request.kind.value}")
