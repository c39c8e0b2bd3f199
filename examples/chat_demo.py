"""Minimal interactive demo of the tool-calling chat session."""

import sys

from toolchat.api.service import build_session, run_chat
from toolchat.config.settings import settings
from toolchat.domain.exceptions import BusinessError
from toolchat.domain.models import StreamFragment


def print_fragment(fragment: StreamFragment) -> None:
    if fragment.kind == "thinking" and not settings.show_thinking:
        return
    sys.stdout.write(fragment.text)
    sys.stdout.flush()


if __name__ == "__main__":
    session = build_session()
    print(f"Model: {session.get_model()}  (empty line to quit)")
    while True:
        question = input("\nYou: ").strip()
        if not question:
            break
        print("Agent: ", end="")
        try:
            reply = run_chat(question, on_fragment=print_fragment, session=session)
        except BusinessError as e:
            print(f"\n[error {e.code}] {e.message}")
            continue
        print()
        if reply["used_tools"]:
            print("[Tools were used to generate this response]")
        if reply["finish_reason"] == "max_iterations":
            print("[Stopped: max iterations reached]")
