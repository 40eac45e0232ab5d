"""
Code-mode agent loop

Exposes a single ``execute_code`` tool to a Claude model. Every code block
the model writes runs through the orchestrator, so the model reaches tools
only via the bridge and only with the scopes of the configured execution.
"""

import json
import logging
from dataclasses import dataclass, field

from .exceptions import BridgeError, SandboxError
from .orchestrator import ProgrammaticToolOrchestrator, build_system_prompt
from .types import CodeExecutionResult, ExecutionConfig

logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Agent loop configuration"""
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    max_iterations: int = 10  # Guards against endless tool-use loops
    tool_name: str = "execute_code"
    custom_instructions: str | None = None
    execution_config: ExecutionConfig = field(default_factory=ExecutionConfig)


def format_execution_result(result: CodeExecutionResult) -> str:
    """Render a result as the tool_result text the model sees"""
    if result.success:
        content = result.output or "(Code executed successfully, but printed nothing)"
    else:
        content = f"Execution error: {result.error or 'unknown error'}"
        if result.output:
            content += f"\n\nOutput before the error:\n{result.output}"

    if result.tool_calls:
        trace = [
            {k: v for k, v in call.to_dict().items() if k != "output"}
            for call in result.tool_calls
        ]
        content += "\n\nTool calls:\n" + json.dumps(trace, ensure_ascii=False, default=str)
    return content


class CodeModeAgent:
    """
    Claude agent that works by writing code against the ``tools`` API

    Usage:
        agent = CodeModeAgent(orchestrator, api_key=os.environ.get("ANTHROPIC_API_KEY"))
        answer = await agent.run("Which region had the highest revenue last month?")
    """

    def __init__(
        self,
        orchestrator: ProgrammaticToolOrchestrator,
        api_key: str | None = None,
        config: AgentConfig | None = None,
        client=None
    ):
        self.orchestrator = orchestrator
        self.api_key = api_key
        self.config = config or AgentConfig()
        self._client = client
        self.last_results: list[CodeExecutionResult] = []

    @property
    def client(self):
        """Lazily created async Anthropic client"""
        if self._client is None:
            try:
                import anthropic
                if self.api_key:
                    self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
                else:
                    self._client = anthropic.AsyncAnthropicBedrock()
            except ImportError:
                raise ImportError(
                    "Anthropic SDK not installed. Run: pip install anthropic"
                )
        return self._client

    def system_prompt(self) -> str:
        return build_system_prompt(
            self.orchestrator.get_tool_type_declarations(),
            self.config.custom_instructions
        )

    def code_execution_tool(self) -> dict:
        return {
            "name": self.config.tool_name,
            "description": (
                "Execute Python code in a sandbox. The code can call the predefined "
                "async tools with `await tools.<name>({...})` and must use print() "
                "to show results. Prefer one code block that loops, filters and "
                "aggregates over many separate calls."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "code": {
                        "type": "string",
                        "description": "Python code to execute. Use await for tool calls and print() for output."
                    }
                },
                "required": ["code"]
            }
        }

    async def _execute_tool(self, tool_name: str, tool_input: dict, tool_use_id: str) -> dict:
        if tool_name != self.config.tool_name:
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": f"Unknown tool: {tool_name}",
                "is_error": True
            }

        code = tool_input.get("code", "")
        logger.info(f"Executing code in sandbox:\n{code}")
        try:
            result = await self.orchestrator.execute_code(code, self.config.execution_config)
        except (SandboxError, BridgeError) as e:
            logger.error(f"Sandbox error: {e}")
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": f"Sandbox error: {e}",
                "is_error": True
            }

        self.last_results.append(result)
        content = format_execution_result(result)
        logger.info(f"Sandbox execution result: {content[:200]}...")
        return {
            "type": "tool_result",
            "tool_use_id": tool_use_id,
            "content": content,
            "is_error": not result.success
        }

    async def run(self, user_message: str, conversation_history: list[dict] | None = None) -> str:
        """
        Run the tool-use loop until the model ends its turn.

        Args:
            user_message: The user's request
            conversation_history: Optional prior messages

        Returns:
            The model's final text reply

        Raises:
            RuntimeError: ``max_iterations`` exceeded
        """
        await self.orchestrator.initialize()

        messages = list(conversation_history) if conversation_history else []
        messages.append({"role": "user", "content": user_message})
        self.last_results = []

        system = self.system_prompt()
        tools = [self.code_execution_tool()]

        for iteration in range(1, self.config.max_iterations + 1):
            logger.info(f"Iteration {iteration}: Calling Claude API")
            response = await self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                system=system,
                messages=messages,
                tools=tools
            )

            if response.stop_reason != "tool_use":
                if response.stop_reason not in ("end_turn", "stop_sequence"):
                    logger.warning(f"Unexpected stop reason: {response.stop_reason}")
                return "".join(
                    block.text for block in response.content if block.type == "text"
                )

            assistant_content = []
            tool_results = []
            for block in response.content:
                if block.type == "text":
                    assistant_content.append({"type": "text", "text": block.text})
                elif block.type == "tool_use":
                    assistant_content.append({
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": block.input
                    })
                    tool_results.append(
                        await self._execute_tool(block.name, block.input, block.id)
                    )

            messages.append({"role": "assistant", "content": assistant_content})
            messages.append({"role": "user", "content": tool_results})

        raise RuntimeError(f"Exceeded maximum iterations ({self.config.max_iterations})")
