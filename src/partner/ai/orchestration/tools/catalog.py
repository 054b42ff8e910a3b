"""Stock tool descriptors and well-known tool names.

Concrete implementations live outside the engine; the catalog only describes
what the model may call. Conversation-scoped tools (context management, todo
list, questions, sub-agents) are implemented in :mod:`.builtin`.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Sequence

from .types import ToolCategory, ToolDescriptor

__all__ = [
    "CORE_TOOL_NAMES",
    "REOPTIMIZE_TOOL_NAME",
    "SUBAGENT_TOOL_NAME",
    "MANAGE_CONTEXT_TOOL_NAME",
    "AUTO_SUMMARIZE_TOOL_NAME",
    "ASK_QUESTIONS_TOOL_NAME",
    "TODO_LIST_TOOL_NAME",
    "TERMINAL_TOOL_NAMES",
    "SEARCH_RETRIEVAL_PAIRS",
    "MCP_PREFIX",
    "default_catalog",
    "reoptimize_descriptor",
    "mcp_descriptors",
]

MANAGE_CONTEXT_TOOL_NAME = "manage_context"
ASK_QUESTIONS_TOOL_NAME = "ask_questions"
TODO_LIST_TOOL_NAME = "todo_list"
AUTO_SUMMARIZE_TOOL_NAME = "auto_summarize_context"
SUBAGENT_TOOL_NAME = "run_sub_agent"
REOPTIMIZE_TOOL_NAME = "reoptimize_tools"

CORE_TOOL_NAMES: tuple[str, ...] = (MANAGE_CONTEXT_TOOL_NAME, ASK_QUESTIONS_TOOL_NAME, TODO_LIST_TOOL_NAME)
TERMINAL_TOOL_NAMES: frozenset[str] = frozenset(
    {"run_terminal_command", "await_terminal_command", "run_shell_script"}
)

# Content-search tool -> retrieval tools that can open what it finds.
SEARCH_RETRIEVAL_PAIRS: Mapping[str, tuple[str, ...]] = {
    "web_search": ("web_fetch", "render_page_content"),
    "local_search": ("read_file",),
    "knowledge_base_search": ("read_file",),
}

MCP_PREFIX = "mcp__"
_MCP_SAFE = re.compile(r"[^A-Za-z0-9_-]+")


def _schema(properties: Mapping[str, Any] | None = None, required: Sequence[str] = ()) -> dict[str, Any]:
    return {"type": "object", "properties": dict(properties or {}), "required": list(required)}


def _string(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def _tool(
    name: str,
    description: str,
    category: str,
    *,
    sensitive: bool = False,
    properties: Mapping[str, Any] | None = None,
    required: Sequence[str] = (),
) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description=description,
        category=category,
        sensitive=sensitive,
        input_schema=_schema(properties, required),
    )


def _core_tools() -> list[ToolDescriptor]:
    return [
        _tool(
            MANAGE_CONTEXT_TOOL_NAME,
            "Manage the conversation context when it grows large: summarize, drop old messages, clear old tool results or keep only the essential messages.",
            ToolCategory.AGENT,
            properties={
                "action": {
                    "type": "string",
                    "enum": ["summarize", "clear_old", "clear_tool_results", "keep_essential", "stats"],
                    "description": "Compaction to run, or 'stats' to report usage.",
                },
                "keep_last": {"type": "integer", "minimum": 0, "description": "Recent messages to keep."},
            },
            required=("action",),
        ),
        _tool(
            ASK_QUESTIONS_TOOL_NAME,
            "Ask the user one or more structured questions and wait for the answers.",
            ToolCategory.INTERACTION,
            properties={
                "questions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "question": {"type": "string"},
                            "options": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["question"],
                    },
                }
            },
            required=("questions",),
        ),
        _tool(
            TODO_LIST_TOOL_NAME,
            "Track multi-step work with a todo list: add, remove, toggle, list or clear items.",
            ToolCategory.AGENT,
            properties={
                "action": {"type": "string", "enum": ["add", "remove", "toggle", "list", "clear"]},
                "text": _string("Item text for 'add'."),
                "index": {"type": "integer", "minimum": 0, "description": "Item index for 'remove' and 'toggle'."},
            },
            required=("action",),
        ),
    ]


def _agent_tools() -> list[ToolDescriptor]:
    return [
        _tool(
            AUTO_SUMMARIZE_TOOL_NAME,
            "Summarize the whole conversation so far and replace it with the summary.",
            ToolCategory.AGENT,
        ),
        _tool(
            SUBAGENT_TOOL_NAME,
            "Delegate a self-contained sub-task to an isolated sub-agent and return its answer.",
            ToolCategory.AGENT,
            properties={"task": _string("What the sub-agent should do."), "context": _string("Background it needs.")},
            required=("task",),
        ),
    ]


def _file_tools() -> list[ToolDescriptor]:
    path = {"path": _string("File or directory path.")}
    return [
        _tool("local_search", "Search local files by name or content.", ToolCategory.FILE,
              properties={"query": _string("Search text."), "directory": _string("Root directory.")}, required=("query",)),
        _tool("read_file", "Read a text file.", ToolCategory.FILE, properties=path, required=("path",)),
        _tool("edit_file", "Edit a file by replacing text.", ToolCategory.FILE, sensitive=True,
              properties={**path, "old_text": _string("Text to replace."), "new_text": _string("Replacement.")},
              required=("path", "old_text", "new_text")),
        _tool("create_file", "Create a new file with content.", ToolCategory.FILE,
              properties={**path, "content": _string("File content.")}, required=("path",)),
        _tool("delete_file", "Delete a file.", ToolCategory.FILE, sensitive=True, properties=path, required=("path",)),
        _tool("move_file", "Move or rename a file.", ToolCategory.FILE, sensitive=True,
              properties={"source": _string("Source path."), "destination": _string("Target path.")},
              required=("source", "destination")),
        _tool("copy_file", "Copy a file.", ToolCategory.FILE,
              properties={"source": _string("Source path."), "destination": _string("Target path.")},
              required=("source", "destination")),
        _tool("list_directory", "List the entries of a directory.", ToolCategory.FILE, properties=path),
        _tool("make_directory", "Create a directory.", ToolCategory.FILE, properties=path, required=("path",)),
        _tool("delete_directory", "Delete a directory and its contents.", ToolCategory.FILE, sensitive=True,
              properties=path, required=("path",)),
    ]


def _network_tools() -> list[ToolDescriptor]:
    url = {"url": _string("Target URL.")}
    return [
        _tool("web_search", "Search the web and return result titles, snippets and links.", ToolCategory.NETWORK,
              properties={"query": _string("Search query.")}, required=("query",)),
        _tool("web_fetch", "Fetch a web page or HTTP resource and return its text.", ToolCategory.NETWORK,
              sensitive=True, properties=url, required=("url",)),
        _tool("render_page_content", "Render a URL off-screen and extract the page text.", ToolCategory.NETWORK,
              properties=url, required=("url",)),
        _tool("render_page_ocr", "Render a URL off-screen and OCR the screenshot.", ToolCategory.NETWORK,
              properties=url, required=("url",)),
        _tool("download_file", "Download a file from the internet into the workspace.", ToolCategory.NETWORK,
              sensitive=True, properties={**url, "filename": _string("Target file name.")}, required=("url",)),
        _tool("http_request", "Send a custom HTTP request (GET, POST, PUT, DELETE ...).", ToolCategory.NETWORK,
              sensitive=True,
              properties={**url, "method": _string("HTTP method."), "headers": {"type": "object"},
                          "body": _string("Request body.")},
              required=("url",)),
        _tool("dns_lookup", "Resolve a domain name.", ToolCategory.NETWORK,
              properties={"hostname": _string("Domain name.")}, required=("hostname",)),
        _tool("ping", "Ping a host.", ToolCategory.NETWORK, properties={"host": _string("Host.")}, required=("host",)),
        _tool("whois", "Look up WHOIS information for a domain.", ToolCategory.NETWORK,
              properties={"domain": _string("Domain.")}, required=("domain",)),
        _tool("check_ssl_certificate", "Inspect a website's TLS certificate.", ToolCategory.NETWORK,
              properties={"host": _string("Host.")}, required=("host",)),
        _tool("port_scan", "Scan ports on a single host.", ToolCategory.NETWORK, sensitive=True,
              properties={"host": _string("Host."), "ports": _string("Port list or range.")}, required=("host",)),
    ]


def _calculation_tools() -> list[ToolDescriptor]:
    expression = {"expression": _string("Expression to evaluate.")}
    return [
        _tool("calculator", "Evaluate an arithmetic expression exactly.", ToolCategory.CALCULATION,
              properties=expression, required=("expression",)),
        _tool("factor_integer", "Factor an integer into primes.", ToolCategory.CALCULATION,
              properties={"n": {"type": "integer"}}, required=("n",)),
        _tool("gcd_lcm", "Compute greatest common divisor and least common multiple.", ToolCategory.CALCULATION,
              properties={"numbers": {"type": "array", "items": {"type": "integer"}}}, required=("numbers",)),
        _tool("base_convert", "Convert an integer between bases 2 to 36.", ToolCategory.CALCULATION,
              properties={"value": _string("Number text."), "from_base": {"type": "integer"},
                          "to_base": {"type": "integer"}},
              required=("value", "from_base", "to_base")),
        _tool("matrix_math", "Matrix operations: multiply, invert, determinant, transpose.", ToolCategory.CALCULATION,
              properties={"operation": _string("Operation."), "matrices": {"type": "array"}},
              required=("operation",)),
        _tool("solve_polynomial", "Find the roots of a polynomial equation of degree 1 to 4.",
              ToolCategory.CALCULATION, properties={"coefficients": {"type": "array", "items": {"type": "number"}}},
              required=("coefficients",)),
        _tool("solve_linear_system", "Solve a system of linear equations.", ToolCategory.CALCULATION,
              properties={"matrix": {"type": "array"}, "vector": {"type": "array"}}, required=("matrix", "vector")),
        _tool("distribution_calc", "Probability distributions: normal, binomial, poisson, uniform.",
              ToolCategory.CALCULATION, properties={"distribution": _string("Distribution name.")},
              required=("distribution",)),
        _tool("combinatorics", "Permutations and combinations.", ToolCategory.CALCULATION,
              properties={"n": {"type": "integer"}, "k": {"type": "integer"}}, required=("n", "k")),
    ]


def _terminal_tools() -> list[ToolDescriptor]:
    command = {"command": _string("Command line to run."), "terminal_id": _string("Terminal session id.")}
    return [
        _tool("make_terminal", "Open a new terminal session.", ToolCategory.TERMINAL),
        _tool("run_terminal_command", "Run a command in a terminal session.", ToolCategory.TERMINAL,
              sensitive=True, properties=command, required=("command",)),
        _tool("await_terminal_command", "Run a command and wait for it to finish.", ToolCategory.TERMINAL,
              sensitive=True, properties=command, required=("command",)),
        _tool("kill_terminal", "Close a terminal session.", ToolCategory.TERMINAL,
              properties={"terminal_id": _string("Terminal session id.")}, required=("terminal_id",)),
        _tool("run_shell_script", "Run a shell script.", ToolCategory.TERMINAL, sensitive=True,
              properties={"script": _string("Script body.")}, required=("script",)),
        _tool("run_javascript", "Run JavaScript code in a sandbox.", ToolCategory.CODE,
              properties={"code": _string("Source code.")}, required=("code",)),
        _tool("run_node_javascript", "Run JavaScript code with Node.js.", ToolCategory.CODE, sensitive=True,
              properties={"code": _string("Source code.")}, required=("code",)),
    ]


def _document_tools() -> list[ToolDescriptor]:
    path = {"path": _string("Office document path.")}
    return [
        _tool("office_unpack", "Unpack an Office document (docx, pptx, xlsx) into a directory.",
              ToolCategory.DOCUMENT, sensitive=True, properties=path, required=("path",)),
        _tool("office_list_contents", "List the files inside an Office document.", ToolCategory.DOCUMENT,
              properties=path, required=("path",)),
        _tool("office_read_inner_file", "Read a file inside an Office document.", ToolCategory.DOCUMENT,
              properties={**path, "inner_path": _string("Path inside the package.")}, required=("path", "inner_path")),
        _tool("office_repack", "Pack a directory back into an Office document.", ToolCategory.DOCUMENT,
              sensitive=True, properties={"directory": _string("Unpacked directory."), **path},
              required=("directory", "path")),
        _tool("office_get_slide_texts", "Extract all text from presentation slides.", ToolCategory.DOCUMENT,
              properties=path, required=("path",)),
        _tool("office_set_slide_texts", "Write translated text back into presentation slides.",
              ToolCategory.DOCUMENT, sensitive=True, properties={**path, "texts": {"type": "array"}},
              required=("path", "texts")),
        _tool("word_extract", "Extract text and styles from a Word document.", ToolCategory.DOCUMENT,
              properties=path, required=("path",)),
        _tool("word_fill_template", "Fill placeholders in a Word template.", ToolCategory.DOCUMENT,
              sensitive=True, properties={**path, "values": {"type": "object"}}, required=("path", "values")),
    ]


def _spreadsheet_tools() -> list[ToolDescriptor]:
    cell_range = {"range": _string("Cell range such as A1:C10.")}
    return [
        _tool("init_spreadsheet", "Open the spreadsheet panel.", ToolCategory.SPREADSHEET),
        _tool("spreadsheet_set_cells", "Set cell values or formulas.", ToolCategory.SPREADSHEET,
              properties={"cells": {"type": "object"}}, required=("cells",)),
        _tool("spreadsheet_get_cells", "Read the cells in a range.", ToolCategory.SPREADSHEET,
              properties=cell_range, required=("range",)),
        _tool("spreadsheet_set_format", "Format cells: font, color, alignment.", ToolCategory.SPREADSHEET,
              properties={**cell_range, "format": {"type": "object"}}, required=("range", "format")),
        _tool("spreadsheet_sort_range", "Sort the data in a range.", ToolCategory.SPREADSHEET,
              properties={**cell_range, "column": _string("Sort column.")}, required=("range",)),
        _tool("spreadsheet_get_data", "Return all spreadsheet data.", ToolCategory.SPREADSHEET),
    ]


def _knowledge_tools() -> list[ToolDescriptor]:
    return [
        _tool("knowledge_base_search", "Search the knowledge base.", ToolCategory.KNOWLEDGE,
              properties={"query": _string("Search text.")}, required=("query",)),
        _tool("knowledge_base_add", "Add an entry to the knowledge base.", ToolCategory.KNOWLEDGE,
              properties={"title": _string("Title."), "content": _string("Body.")}, required=("title", "content")),
        _tool("knowledge_base_delete", "Delete a knowledge base entry.", ToolCategory.KNOWLEDGE, sensitive=True,
              properties={"id": _string("Entry id.")}, required=("id",)),
        _tool("memory_search", "Search long-term memories about the user.", ToolCategory.MEMORY,
              properties={"query": _string("Search text.")}, required=("query",)),
        _tool("memory_add", "Remember a fact about the user.", ToolCategory.MEMORY,
              properties={"content": _string("Fact.")}, required=("content",)),
        _tool("memory_delete", "Forget a stored memory.", ToolCategory.MEMORY, sensitive=True,
              properties={"id": _string("Memory id.")}, required=("id",)),
    ]


def _system_tools() -> list[ToolDescriptor]:
    return [
        _tool("read_clipboard", "Read the clipboard text.", ToolCategory.SYSTEM),
        _tool("write_clipboard", "Write text to the clipboard.", ToolCategory.SYSTEM,
              properties={"text": _string("Text.")}, required=("text",)),
        _tool("take_screenshot", "Capture the screen into the workspace.", ToolCategory.SYSTEM),
        _tool("extract_text_from_image", "Recognize text in an image (OCR).", ToolCategory.SYSTEM,
              properties={"path": _string("Image path.")}, required=("path",)),
        _tool("get_system_info", "Report OS, CPU and memory information.", ToolCategory.SYSTEM),
        _tool("open_browser", "Open a URL in the default browser.", ToolCategory.SYSTEM,
              properties={"url": _string("URL.")}, required=("url",)),
        _tool("list_skills", "List the available skills.", ToolCategory.SKILL),
        _tool("run_skill_script", "Run a skill's script.", ToolCategory.SKILL,
              properties={"skill": _string("Skill name.")}, required=("skill",)),
        _tool("generate_image", "Generate an image from a prompt.", ToolCategory.CREATIVE,
              properties={"prompt": _string("Image prompt.")}, required=("prompt",)),
        _tool("invite_game", "Invite the user to play a word or card game.", ToolCategory.GAME,
              properties={"game": _string("Game name.")}, required=("game",)),
        _tool("draw_tarot", "Draw a tarot card.", ToolCategory.ENTERTAINMENT),
        _tool("mcp_list_tools", "List and refresh the tools offered by connected MCP servers.", ToolCategory.MCP,
              properties={"server_name": _string("Only list this server.")}),
    ]


def default_catalog() -> list[ToolDescriptor]:
    """Return the stock descriptors, core tools first."""

    return [
        *_core_tools(),
        *_agent_tools(),
        *_file_tools(),
        *_network_tools(),
        *_calculation_tools(),
        *_terminal_tools(),
        *_document_tools(),
        *_spreadsheet_tools(),
        *_knowledge_tools(),
        *_system_tools(),
    ]


def reoptimize_descriptor() -> ToolDescriptor:
    """Descriptor for the reserved re-selection request handled by the controller."""

    return _tool(
        REOPTIMIZE_TOOL_NAME,
        "Request a different tool set when the current tools cannot complete the task.",
        ToolCategory.AGENT,
        properties={"reason": _string("What capability is missing.")},
    )


def mcp_descriptors(server: str, tools: Iterable[Mapping[str, Any]]) -> list[ToolDescriptor]:
    """Build descriptors for tools advertised by an MCP server.

    Each entry needs a ``name`` and may carry ``description`` and
    ``inputSchema``. Names become ``mcp__<server>__<tool>``.
    """

    server_key = _MCP_SAFE.sub("_", server).strip("_") or "server"
    descriptors: list[ToolDescriptor] = []
    for entry in tools:
        tool_name = str(entry.get("name") or "").strip()
        if not tool_name:
            continue
        schema = entry.get("inputSchema")
        if not isinstance(schema, Mapping):
            schema = _schema()
        description = str(entry.get("description") or tool_name)
        descriptors.append(
            ToolDescriptor(
                name=f"{MCP_PREFIX}{server_key}__{_MCP_SAFE.sub('_', tool_name)}",
                description=f"[MCP:{server}] {description}",
                category=ToolCategory.MCP,
                input_schema=dict(schema),
            )
        )
    return descriptors
