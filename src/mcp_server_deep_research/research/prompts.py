"""LLM prompts for deep research."""

from datetime import UTC, datetime


def get_system_prompt() -> str:
    now = datetime.now(UTC).isoformat(timespec="seconds")
    return f"""You are an expert researcher. Today is {now}. Follow these instructions when responding:

- You may be asked to research subjects that are after your knowledge cutoff, assume the user is right when presented with news.
- The user is a highly experienced analyst, no need to simplify it, be as detailed as possible and make sure your response is correct.
- Be highly organized.
- Suggest solutions that the user didn't think about.
- Be proactive and anticipate the user's needs.
- Mistakes erode trust, so be accurate and thorough.
- Provide detailed explanations, the user is comfortable with lots of detail.
- Value good arguments over authorities, the source is irrelevant.
- Consider new technologies and contrarian ideas, not just the conventional wisdom.
- You may use high levels of speculation or prediction, just flag it for the user."""


def language_instruction(language: str | None) -> str:
    return f"\n\n**Respond in {language}**" if language else ""


QUERY_OUTPUT_FORMAT = """Respond with ONLY a JSON array, no prose. Each item is an object:
{"query": "<search engine query>", "researchGoal": "<what this query should find out and how to continue once results arrive>"}"""


def get_report_plan_prompt(goal: str) -> str:
    return f"""Given the following research topic, write a short outline for the final report.
Identify the sections the report needs and what must be found out for each one.

<QUERY>
{goal}
</QUERY>

Keep the plan concise: one line per section, at most 8 sections."""


def get_serp_queries_prompt(plan: str, max_queries: int) -> str:
    return f"""This is the report plan after user confirmation:
<PLAN>
{plan}
</PLAN>

Based on the plan, generate a list of up to {max_queries} SERP queries to research the topic.
Each query must be unique and target one aspect of the plan.

{QUERY_OUTPUT_FORMAT}"""


def get_search_result_prompt(query: str, research_goal: str, context: list[str]) -> str:
    joined = "\n".join(f'<content index="{i + 1}">\n{item}\n</content>' for i, item in enumerate(context))
    return f"""Given the following contexts from a SERP search for the query:
<QUERY>
{query}
</QUERY>

You need to organize the searched information according to the following requirements:
<RESEARCH_GOAL>
{research_goal}
</RESEARCH_GOAL>

The following context from the SERP search:
<CONTEXT>
{joined}
</CONTEXT>

Extract the learnings from the context. Keep them concise and information dense: include entities,
exact metrics, numbers and dates. Cite the content index in square brackets, e.g. [1], when a learning
comes from a specific context."""


def get_knowledge_prompt(query: str, research_goal: str) -> str:
    return f"""Answer the following research query from your own knowledge. No web search is available.
<QUERY>
{query}
</QUERY>

<RESEARCH_GOAL>
{research_goal}
</RESEARCH_GOAL>

Be concise and information dense. Flag anything that may be outdated."""


def get_review_prompt(plan: str, learnings: list[str], max_queries: int, suggestion: str | None = None) -> str:
    joined = "\n".join(f"<learning>\n{learning}\n</learning>" for learning in learnings)
    extra = f"\n\nThe user also suggests:\n<SUGGESTION>\n{suggestion}\n</SUGGESTION>" if suggestion else ""
    return f"""This is the report plan after user confirmation:
<PLAN>
{plan}
</PLAN>

Here are all the learnings from previous research:
<LEARNINGS>
{joined}
</LEARNINGS>{extra}

Decide whether the research is complete enough to write the report. If it is, respond with an empty
JSON array: []. Otherwise generate up to {max_queries} follow-up SERP queries that fill the gaps.
Do not repeat queries that were already run.

{QUERY_OUTPUT_FORMAT}"""


def get_final_report_prompt(
    plan: str,
    learnings: list[str],
    sources: list[dict],
    images: list[dict],
    requirement: str | None = None,
    enable_references: bool = True,
) -> str:
    joined = "\n".join(f"<learning>\n{learning}\n</learning>" for learning in learnings)
    sources_text = "\n".join(f'{i + 1}. [{s.get("title") or s["url"]}]({s["url"]})' for i, s in enumerate(sources))
    images_text = "\n".join(f'{i + 1}. ![{img.get("description") or ""}]({img["url"]})' for i, img in enumerate(images))
    requirement_text = f"\n\nPlease write according to the user's writing requirements:\n<REQUIREMENT>\n{requirement}\n</REQUIREMENT>" if requirement else ""
    citation_rule = (
        "\n\nCite sources inline with their number in square brackets, e.g. [1], and end with a '## References' section."
        if enable_references and sources
        else ""
    )
    image_rule = "\n\nWhere an image illustrates a point, embed it with markdown image syntax." if images else ""
    return f"""This is the report plan after user confirmation:
<PLAN>
{plan}
</PLAN>

Here are all the learnings from previous research:
<LEARNINGS>
{joined}
</LEARNINGS>

Here are all the sources from previous research:
<SOURCES>
{sources_text}
</SOURCES>

Here are all the images from previous research:
<IMAGES>
{images_text}
</IMAGES>{requirement_text}

Write a final report based on the report plan using the learnings from research.
Make it as detailed as possible, aim for several pages, and include ALL the learnings.
Start with a single '# ' title line, then use '## ' headings for sections.{citation_rule}{image_rule}

**Respond only with the final report content, no additional text before or after.**"""


# --- Company research ---

INVESTMENT_RESEARCH_SECTIONS: dict[str, str] = {
    "companyOverview": "Company Overview",
    "competitiveAnalysis": "Competitive Analysis",
    "marketBackground": "Market Background",
    "customersBuyersChannels": "Customers, Buyers and Channels",
    "productAndTechnology": "Product and Technology",
    "financialsAndFunding": "Financials and Funding",
    "managementTeam": "Management Team",
    "recentNews": "Recent News",
    "risksAndChallenges": "Risks and Challenges",
    "bullBearCase": "Bull and Bear Case",
}

SECTION_PRIORITIES: dict[str, str] = {
    "companyOverview": "high",
    "competitiveAnalysis": "high",
    "bullBearCase": "high",
    "marketBackground": "medium",
    "customersBuyersChannels": "medium",
    "recentNews": "medium",
    "productAndTechnology": "low",
    "financialsAndFunding": "low",
    "managementTeam": "low",
    "risksAndChallenges": "low",
}


def get_company_goal(
    company_name: str,
    company_website: str | None = None,
    industry: str | None = None,
    competitors: list[str] | None = None,
    additional_context: str | None = None,
) -> str:
    lines = [f"Investment research on the company {company_name}."]
    if company_website:
        lines.append(f"Website: {company_website}")
    if industry:
        lines.append(f"Industry: {industry}")
    if competitors:
        lines.append(f"Known competitors: {', '.join(competitors)}")
    if additional_context:
        lines.append(f"Additional context: {additional_context}")
    return "\n".join(lines)


def get_company_plan_prompt(goal: str, sections: list[str]) -> str:
    section_list = "\n".join(f"- {section}" for section in sections)
    return f"""Write a short research plan for the following company analysis.

<COMPANY>
{goal}
</COMPANY>

The report must cover these sections:
{section_list}

For each section, state in one line what must be found out."""


def get_company_report_requirement(company_name: str, sections: list[str]) -> str:
    section_list = "\n".join(f"## {section}" for section in sections)
    return f"""Write an investment research report titled '# {company_name} Research Report' with exactly these sections:
{section_list}

Quantify wherever possible (revenue, growth, funding, headcount, market size). Flag unverified claims."""


# --- Market research ---


def get_market_goal(query: str, industry: str | None = None, timeframe: str | None = None) -> str:
    lines = [f"Market research: {query}"]
    if industry:
        lines.append(f"Industry: {industry}")
    if timeframe:
        lines.append(f"Timeframe: {timeframe}")
    return "\n".join(lines)


MARKET_REPORT_REQUIREMENT = """Structure the report as a market analysis:
## Market Overview
## Market Size and Growth
## Key Players
## Trends and Drivers
## Challenges and Risks
## Outlook"""
