"""Texts fed back to the model as tool results and corrective turns."""

TOOL_USE_REMINDER = """# Reminder: Instructions for Tool Use

Tool uses are formatted using XML-style tags. The tool name is enclosed in opening and closing tags, and each parameter is similarly enclosed within its own set of tags. Here's the structure:

<tool_name>
<parameter1_name>value1</parameter1_name>
<parameter2_name>value2</parameter2_name>
...
</tool_name>

For example:

<attempt_completion>
<result>
I have completed the task...
</result>
</attempt_completion>

Always adhere to this format for all tool uses to ensure proper parsing and execution."""

INTERRUPTED_BY_TOOL = (
    "\n\n[Response interrupted by a tool use result. Only one tool may be used "
    "at a time and should be placed at the end of the message.]"
)
INTERRUPTED_BY_USER = "[Response interrupted by user]"
INTERRUPTED_BY_API_ERROR = "[Response interrupted by API Error]"
EMPTY_RESPONSE = "Failure: I did not provide a response."
NO_RESULT = "(tool did not return anything)"


def tool_denied() -> str:
    return "The user denied this operation."


def tool_denied_with_feedback(feedback: str | None) -> str:
    return (
        "The user denied this operation and provided the following feedback:\n"
        f"<feedback>\n{feedback or ''}\n</feedback>"
    )


def tool_error(error: str | None) -> str:
    return f"The tool execution failed with the following error:\n<error>\n{error or ''}\n</error>"


def missing_parameter(param_name: str) -> str:
    return (
        f"Missing value for required parameter '{param_name}'. "
        f"Please retry with complete response.\n\n{TOOL_USE_REMINDER}"
    )


def no_tools_used() -> str:
    return f"""[ERROR] You did not use a tool in your previous response! Please retry with a tool use.

{TOOL_USE_REMINDER}

# Next Steps

If you have completed the user's task, use the attempt_completion tool.
If you require additional information from the user, use the ask_followup_question tool.
Otherwise, if you have not completed the task and do not need additional information, then proceed with the next step of the task.
(This is an automated message, so do not respond to it conversationally.)"""


def too_many_mistakes(feedback: str | None) -> str:
    """Stronger corrective instruction after repeated mistakes or stalls."""
    if feedback and feedback.strip():
        return (
            "You seem to be having trouble proceeding. The user has provided the "
            f"following feedback to help guide you:\n<feedback>\n{feedback}\n</feedback>"
        )
    return (
        "You seem to be having trouble proceeding. Stop repeating the previous "
        "approach. Re-read the task and the most recent tool results, then choose "
        "a different next step and express it as exactly one well-formed tool use.\n\n"
        f"{TOOL_USE_REMINDER}"
    )


def skipped_after_rejection(description: str, partial: bool) -> str:
    if partial:
        return f"Tool {description} was interrupted and not executed due to user rejecting a previous tool."
    return f"Skipping tool {description} due to user rejecting a previous tool."


def one_tool_per_message(tool_name: str) -> str:
    return (
        f"Tool [{tool_name}] was not executed because a tool has already been used in this message. "
        "Only one tool may be used per message. You must assess the first tool's result before "
        "proceeding to use the next tool."
    )


def missing_parameter_notice(tool_name: str, param_name: str, path: str | None = None) -> str:
    target = f" for '{path}'" if path else ""
    return f"Tried to use {tool_name}{target} without value for required parameter '{param_name}'. Retrying..."


def task_resumption(ago: str, cwd: str, was_completed: bool) -> str:
    if was_completed:
        return (
            f"[TASK RESUMPTION] This task was interrupted {ago}. The task may or may not be "
            f"complete, so please reassess the task context. The current working directory is "
            f"now '{cwd}'. If the user provides new instructions below, follow them."
        )
    return (
        f"[TASK RESUMPTION] This task was interrupted {ago}. It may or may not be complete, so "
        "please reassess the task context. Be aware that the project state may have changed "
        f"since then. The current working directory is now '{cwd}'. If the task has not been "
        "completed, retry the last step before interruption and proceed with completing the task."
    )


def resumption_feedback(text: str) -> str:
    return f"\n\nNew instructions for task continuation:\n<user_message>\n{text}\n</user_message>"


def completion_feedback(feedback: str) -> str:
    return (
        "The user has provided feedback on the results. Consider their input to "
        f"continue the task, and then attempt completion again.\n<feedback>\n{feedback}\n</feedback>"
    )
