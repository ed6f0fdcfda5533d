from __future__ import annotations as _annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import logfire
from pydantic_graph import (
    BaseNode,
    End,
    Graph,
    GraphRunContext,
)

from pydantic_ai import Agent, format_as_xml
from pydantic_ai.messages import ModelMessage

from grading_config import get_config
from grading_entities import GradingStats, QAPair, TopicNode
from grading_system import ConversationGradingSystem

# 'if-token-present' means nothing will be sent (and the loop still works) if you don't have logfire configured
logfire.configure(send_to_logfire='if-token-present')

ask_agent = Agent(
    get_config().scoring.model,
    output_type=str,
    system_prompt=(
        'You are interviewing a candidate. Ask one open question that digs '
        'deeper into the given topic without repeating earlier questions.'
    ),
    defer_model_check=True,
)

AnswerProvider = Callable[[str], Awaitable[str]]


@dataclass
class InterviewState:
    """Mutable state of one adaptive interview run."""

    max_turns: int = 5
    turn: int = 0
    question: Optional[str] = None
    target_node_id: Optional[str] = None
    graded_node_ids: List[str] = field(default_factory=list)
    ask_agent_messages: List[ModelMessage] = field(default_factory=list)


@dataclass
class InterviewDeps:
    system: ConversationGradingSystem
    answer_provider: AnswerProvider


def build_question_prompt(target: Optional[TopicNode], asked: List[str]) -> str:
    if target is None:
        return format_as_xml({
            'instruction': 'Open the interview with a broad question about the candidate\'s expertise.',
        })
    return format_as_xml({
        'topic': target.topic,
        'topic_depth': target.depth,
        'previous_questions': asked[-5:],
    })


@dataclass
class Ask(BaseNode[InterviewState, InterviewDeps]):
    """Node that picks the next topic to explore and generates a question for it."""

    async def run(self, ctx: GraphRunContext[InterviewState, InterviewDeps]) -> Answer:
        with logfire.span('ask_node.generate_question') as span:
            system = ctx.deps.system
            target = system.get_deepest_unvisited_branch() or system.get_current_topic()
            ctx.state.target_node_id = target.id if target else None

            asked = [qa.question for qa in system.get_topic_tree().all_qa_pairs()]
            result = await ask_agent.run(
                build_question_prompt(target, asked),
                message_history=ctx.state.ask_agent_messages,
            )
            ctx.state.ask_agent_messages += result.all_messages()
            ctx.state.question = result.output

            span.set_attribute('target_node_id', ctx.state.target_node_id)
            span.set_attribute('generated_question', result.output)
            logfire.info('Question generated',
                         question=result.output,
                         target_topic=target.topic if target else None)

            return Answer(result.output)


@dataclass
class Answer(BaseNode[InterviewState, InterviewDeps]):
    """Node that collects the candidate's answer from the answer provider."""

    question: str

    async def run(self, ctx: GraphRunContext[InterviewState, InterviewDeps]) -> Grade:
        with logfire.span('answer_node.collect_answer') as span:
            answer = await ctx.deps.answer_provider(self.question)

            span.set_attribute('answer_length', len(answer))
            logfire.info('Answer collected', question=self.question)

            return Grade(answer)


@dataclass
class Grade(BaseNode[InterviewState, InterviewDeps, GradingStats]):
    """Node that grades the answer into the topic tree and decides whether to continue."""

    answer: str

    async def run(
        self,
        ctx: GraphRunContext[InterviewState, InterviewDeps],
    ) -> Ask | End[GradingStats]:
        with logfire.span('grade_node.grade_answer') as span:
            system = ctx.deps.system
            ctx.state.turn += 1

            if ctx.state.question and self.answer.strip():
                node_id = await system.add_qa_pair(
                    QAPair(question=ctx.state.question, answer=self.answer)
                )
                ctx.state.graded_node_ids.append(node_id)
                span.set_attribute('node_id', node_id)
            else:
                logfire.warning('Skipping empty answer', turn=ctx.state.turn)

            target_id = ctx.state.target_node_id
            if target_id and system.tree_manager.has_node(target_id):
                system.mark_topic_as_visited(target_id)

            ctx.state.question = None
            ctx.state.target_node_id = None

            if ctx.state.turn >= ctx.state.max_turns:
                stats = system.get_stats()
                logfire.info('Interview finished',
                             turns=ctx.state.turn,
                             total_nodes=stats.total_nodes,
                             average_score=stats.average_score)
                return End(stats)
            return Ask()


interview_graph = Graph(
    nodes=(Ask, Answer, Grade), state_type=InterviewState
)


async def run_interview(
    system: ConversationGradingSystem,
    answer_provider: AnswerProvider,
    max_turns: int = 5,
) -> GradingStats:
    """Run the adaptive questioning loop and return the final statistics."""
    with logfire.span('interview.session', session_id=system.session_id) as span:
        state = InterviewState(max_turns=max_turns)
        deps = InterviewDeps(system=system, answer_provider=answer_provider)
        result = await interview_graph.run(Ask(), state=state, deps=deps)

        span.set_attribute('turns', state.turn)
        return result.output


async def _stdin_answer(question: str) -> str:
    return await asyncio.to_thread(input, f'{question}\n> ')


if __name__ == '__main__':
    import sys

    try:
        sub_command = sys.argv[1]
        assert sub_command in ('interview', 'mermaid')
    except (IndexError, AssertionError):
        print(
            'Usage:\n'
            '  python interview_graph.py mermaid\n'
            'or:\n'
            '  python interview_graph.py interview [max_turns]',
            file=sys.stderr,
        )
        sys.exit(1)

    if sub_command == 'mermaid':
        print(interview_graph.mermaid_code(start_node=Ask))
    else:
        turns = int(sys.argv[2]) if len(sys.argv) > 2 else 5
        final = asyncio.run(run_interview(ConversationGradingSystem(), _stdin_answer, turns))
        print(final.model_dump_json(indent=2))
