"""
CHAT RELAY TERMINAL CLIENT
==========================

PURPOSE:
Command-line chat front end for the relay. Sends each message to the streaming
endpoint and prints the reply as it is generated. Conversations are kept in a
local list (database/client_data/conversations.json by default) so they can be
reopened later.

USAGE:
    python chat_cli.py

    Make sure the server is running first: python run.py

COMMANDS:
    /history         - Show the current conversation as the server has it
    /conversations   - List locally saved conversations (most recent first)
    /load <id>       - Reopen a saved conversation
    /models          - List models on the model server
    /model <name>    - Use <name> for new conversations
    /health          - Check that the model server is reachable
    /clear           - Forget the current conversation and start a new one
    /quit or /exit   - Exit

While a reply is streaming, Ctrl+C cancels it.
"""

import threading

from chat_client import ConversationHistory, StreamClient
from app.models import Role
from config import CHAT_API_URL, CLIENT_DATA_DIR


# -----------------------------------------------------------------------------
# UI HELPERS
# -----------------------------------------------------------------------------

def print_header():
    print("\n" + "=" * 60)
    print("Local Chat - streaming client")
    print("=" * 60)
    print(f"\nServer: {CHAT_API_URL}")
    print("\nCommands:")
    print("  /history        - Server copy of this conversation")
    print("  /conversations  - Saved conversations")
    print("  /load <id>      - Reopen a saved conversation")
    print("  /models         - Installed models")
    print("  /model <name>   - Switch model")
    print("  /health         - Model server status")
    print("  /clear          - New conversation")
    print("  /quit           - Exit")
    print("  Ctrl+C while a reply streams cancels it")
    print("=" * 60 + "\n")


def get_user_input():
    try:
        return input("\nYou: ").strip()
    except (KeyboardInterrupt, EOFError):
        return None


class ReplyPrinter:
    """on_update callback: prints only the text added since the last update."""

    def __init__(self):
        self.printed = 0

    def reset(self):
        self.printed = 0

    def __call__(self, client: StreamClient):
        if not client.messages:
            return
        last = client.messages[-1]
        if last.role == Role.ASSISTANT and len(last.content) > self.printed:
            print(last.content[self.printed:], end="", flush=True)
            self.printed = len(last.content)


# -----------------------------------------------------------------------------
# COMMANDS
# -----------------------------------------------------------------------------

def show_server_history(client: StreamClient) -> str:
    result = client.get_conversation()
    if not result.get("success"):
        return f"Error: {result.get('error', 'Could not retrieve history')}"

    messages = result["conversation"].get("messages", [])
    if not messages:
        return "No messages in this conversation"
    output = f"\nConversation History ({len(messages)} messages):\n" + "-" * 60 + "\n"
    for i, msg in enumerate(messages, 1):
        role = "You" if msg.get("role") == "user" else "Assistant"
        output += f"{i}. {role}: {msg.get('content', '')}\n"
    return output + "-" * 60


def show_saved_conversations(history: ConversationHistory) -> str:
    if not len(history):
        return "No saved conversations"
    lines = ["\nSaved conversations:"]
    for saved in history.conversations:
        lines.append(f"  {saved.id}  {saved.timestamp:%Y-%m-%d %H:%M}  ({saved.message_count} msgs)  {saved.title}")
    return "\n".join(lines)


def stream_reply(client: StreamClient, printer: ReplyPrinter, message: str):
    """Run client.send on a worker thread so Ctrl+C on the main thread can cancel it."""
    printer.reset()
    print("Assistant: ", end="", flush=True)
    worker = threading.Thread(target=client.send, args=(message,), daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(timeout=0.1)
        except KeyboardInterrupt:
            client.cancel()
    print()
    last = client.messages[-1] if client.messages else None
    if last is not None and last.role == Role.SYSTEM:
        print(last.content)


# -----------------------------------------------------------------------------
# MAIN LOOP
# -----------------------------------------------------------------------------

def main():
    print_header()

    printer = ReplyPrinter()
    history = ConversationHistory(CLIENT_DATA_DIR / "conversations.json")
    client = StreamClient(history=history, on_update=printer)

    health = client.check_health()
    if not health.get("success"):
        print(f"Warning: {health.get('error', 'model server not reachable')}")

    while True:
        try:
            user_input = get_user_input()
            if user_input is None:
                print("\nGoodbye!")
                break
            if not user_input:
                continue

            command, _, arg = user_input.partition(" ")
            arg = arg.strip()

            if command == "/history":
                print(show_server_history(client))
            elif command == "/conversations":
                print(show_saved_conversations(history))
            elif command == "/load":
                if client.load_conversation(arg):
                    print(f"Loaded conversation {arg} ({len(client.messages)} messages)")
                else:
                    print(f"Error: no saved conversation {arg!r}")
            elif command == "/models":
                result = client.get_models()
                if result.get("success"):
                    print("Models: " + (", ".join(result.get("models", [])) or "(none installed)"))
                else:
                    print(f"Error: {result.get('error')}")
            elif command == "/model":
                client.model = arg or None
                print(f"Model set to {client.model or 'server default'}")
            elif command == "/health":
                result = client.check_health()
                print("Connected" if result.get("connected") else f"Disconnected: {result.get('error')}")
            elif command == "/clear":
                client.clear_conversation()
                print("\nConversation cleared. Starting fresh!")
            elif command in ["/quit", "/exit"]:
                print("\nGoodbye!")
                break
            elif command.startswith("/"):
                print(f"Error: unknown command {command}")
            else:
                stream_reply(client, printer, user_input)

        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break


# Run the interactive loop when this file is executed (python chat_cli.py).
if __name__ == "__main__":
    main()
