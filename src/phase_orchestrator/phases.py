from __future__ import annotations

from .models import ExecutionState, Phase


PHASE_PROMPTS: dict[Phase, str] = {
    Phase.MARKET_RESEARCH: (
        "Conduct comprehensive market research for this project. Analyze:\n"
        "- Target market size and growth trends\n"
        "- Key market segments and their characteristics\n"
        "- Current market dynamics and driving factors\n"
        "- Market entry barriers and opportunities\n"
        "- Potential for market disruption\n\n"
        "Provide data-driven insights with specific numbers where available."
    ),
    Phase.COMPETITIVE_ANALYSIS: (
        "Perform detailed competitive analysis. Research and analyze:\n"
        "- Direct and indirect competitors\n"
        "- Competitor strengths and weaknesses\n"
        "- Market positioning and differentiation strategies\n"
        "- Pricing models and business models\n"
        "- Technology stacks used by competitors\n"
        "- Competitive gaps and opportunities\n\n"
        "Create a competitive matrix and provide actionable insights."
    ),
    Phase.TECHNICAL_FEASIBILITY: (
        "Evaluate technical feasibility for this project. Assess:\n"
        "- Required technology stack and components\n"
        "- Technical complexity and challenges\n"
        "- Skills and expertise needed\n"
        "- Third-party dependencies and integrations\n"
        "- Scalability considerations\n"
        "- Security requirements\n"
        "- Performance requirements\n\n"
        "Provide recommendations on technology choices and implementation approach."
    ),
    Phase.ARCHITECTURE_DESIGN: (
        "Design the system architecture for this project. Include:\n"
        "- High-level system architecture diagram (in Mermaid format)\n"
        "- Component breakdown and responsibilities\n"
        "- Data flow and communication patterns\n"
        "- Database design considerations\n"
        "- API design principles\n"
        "- Security architecture\n"
        "- Infrastructure requirements\n"
        "- Deployment strategy\n\n"
        "Provide detailed architectural decisions with rationale."
    ),
    Phase.RISK_ASSESSMENT: (
        "Conduct risk assessment for this project. Identify and analyze:\n"
        "- Technical risks and mitigation strategies\n"
        "- Market risks and contingency plans\n"
        "- Operational risks\n"
        "- Financial risks\n"
        "- Timeline risks\n"
        "- Resource risks\n"
        "- Regulatory and compliance risks\n\n"
        "Create a risk matrix with probability, impact, and mitigation strategies."
    ),
    Phase.SPRINT_PLANNING: (
        "Create sprint planning for this project. Include:\n"
        "- Epic breakdown into user stories\n"
        "- Story point estimates\n"
        "- Sprint goals and deliverables\n"
        "- Dependencies between stories\n"
        "- Team velocity considerations\n"
        "- Acceptance criteria for key features\n"
        "- Definition of done\n\n"
        "Provide a realistic timeline with milestones."
    ),
    Phase.GENERAL: "Provide general analysis and insights for this project.",
}

PHASE_DISPLAY_NAMES: dict[Phase, str] = {
    Phase.MARKET_RESEARCH: "Market Research",
    Phase.COMPETITIVE_ANALYSIS: "Competitive Analysis",
    Phase.TECHNICAL_FEASIBILITY: "Technical Feasibility",
    Phase.ARCHITECTURE_DESIGN: "Architecture Design",
    Phase.RISK_ASSESSMENT: "Risk Assessment",
    Phase.SPRINT_PLANNING: "Sprint Planning",
    Phase.GENERAL: "General",
}

REVISION_HEADER = "REVISION REQUESTED:"


def display_name(phase: Phase) -> str:
    return PHASE_DISPLAY_NAMES.get(phase, phase.value)


def build_phase_prompt(phase: Phase, state: ExecutionState | None = None) -> str:
    """Return the phase prompt, prefixed with the project context when a state is given."""
    prompt = PHASE_PROMPTS[phase]
    if state is None:
        return prompt
    return f"Project: {state.project_name}\nLocation: {state.project_path}\n\n{prompt}"


def build_revision_prompt(base_prompt: str, feedback: str) -> str:
    """Append reviewer feedback to the original phase prompt, verbatim."""
    return (
        f"{base_prompt}\n\n"
        f"{REVISION_HEADER}\n"
        "The previous output needs to be revised based on the following feedback:\n"
        f"{feedback}\n\n"
        "Please regenerate the content, addressing the feedback above."
    )


def build_session_system_prompt(project_name: str, *, resuming: bool = False) -> str:
    prompt = (
        f'You are a project planning assistant helping to plan "{project_name}".\n'
        "Your role is to provide comprehensive, data-driven analysis for each planning phase.\n"
        "Format your responses in markdown with clear headings and structured content.\n"
        "Include Mermaid diagrams where appropriate for visualizations.\n"
        "Be thorough but concise."
    )
    if resuming:
        prompt += (
            "\n\nNOTE: This session is resuming from a previous checkpoint. "
            "Continue from where it left off."
        )
    return prompt
