import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from character_chat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from character_chat.bootstrap import bootstrap_runtime
from character_chat.chat_service import ChatService
from character_chat.demo import DEMO_CHARACTER, DEMO_PRESET_ID, DEMO_USER_ID, seed_demo
from character_chat.errors import ChatError
from character_chat.models import SessionStateUpdate
from character_chat.streaming import ChunkEvent, DoneEvent, ErrorEvent

_HELP = """\
Commands:
  /mode <story|chat|creator_debug>   change the chat mode
  /model <provider id>               change the AI model
  /state mood=<m> level=<n> scene=<s> progress=<n>
  /note <text>                       add a note to this session
  /notes                             list notes for this session
  /stats                             memory and token stats
  /sessions                          list your sessions
  exit                               quit"""


async def _stream_turn(service: ChatService, session_id: str, text: str) -> None:
    print(f"{DEMO_CHARACTER.name}> ", end="", flush=True)
    async for event in service.stream_message(session_id, DEMO_USER_ID, text):
        if isinstance(event, ChunkEvent):
            print(event.content, end="", flush=True)
        elif isinstance(event, DoneEvent):
            print(f"\n[{event.tokens_used} tokens, cost {event.token_cost}]")
            for i, suggestion in enumerate(event.suggested_replies, 1):
                print(f"  {i}. {suggestion}")
        elif isinstance(event, ErrorEvent):
            print(f"\n[{event.kind}] {event.reason}")


def _parse_state(args: str) -> SessionStateUpdate:
    values: dict = {}
    for part in args.split():
        key, _, value = part.partition("=")
        if key == "mood":
            values["mood"] = value
        elif key == "level":
            values["relationship_level"] = int(value)
        elif key == "scene":
            values["scene"] = value.replace("_", " ")
        elif key == "progress":
            values["progress_counter"] = int(value)
    return SessionStateUpdate(**values)


def _run_command(service: ChatService, session_id: str, command: str, args: str) -> None:
    if command == "/help":
        print(_HELP)
    elif command == "/mode":
        session = service.change_mode(session_id, DEMO_USER_ID, args)
        print(f"Mode: {session.mode}")
    elif command == "/model":
        session = service.change_provider(session_id, DEMO_USER_ID, args)
        print(f"Model: {session.provider_id}")
    elif command == "/state":
        state = service.update_session_state(session_id, DEMO_USER_ID, _parse_state(args)).state
        print(f"State: {state}")
    elif command == "/note":
        note = service.create_note(DEMO_USER_ID, "session", session_id, args)
        print(f"Note added: {note.id}")
    elif command == "/notes":
        for note in service.list_notes(DEMO_USER_ID, "session", session_id):
            pin = "*" if note.is_pinned else " "
            print(f" {pin} {note.id[:8]} [{note.category}] {note.content}")
    elif command == "/stats":
        print(service.memory_stats(session_id, DEMO_USER_ID))
    elif command == "/sessions":
        for session in service.list_sessions(DEMO_USER_ID):
            print(f"  {session.id}  {session.title}  ({session.mode}, {session.provider_id})")
    else:
        print(f"Unknown command: {command}. Type /help.")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app)
    try:
        runtime = bootstrap_runtime(app, env)
    except ValueError as ex:
        logger.error(f"Startup failed: {ex}")
        sys.exit(1)

    service = runtime.service
    seed_demo(runtime.store)
    session = service.create_session(DEMO_USER_ID, DEMO_CHARACTER.id, preset_id=DEMO_PRESET_ID)

    print("character-chat (type 'exit' to quit, '/help' for commands)")
    print(f"Session: {session.id} ({session.title}, model {session.provider_id})")
    print(f"Models: {', '.join(runtime.router.provider_ids)}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()
    print(f"{DEMO_CHARACTER.name}> {DEMO_CHARACTER.greeting}\n")

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if trimmed.startswith("/"):
                    command, _, args = trimmed.partition(" ")
                    _run_command(service, session.id, command, args.strip())
                else:
                    await _stream_turn(service, session.id, trimmed)
                print()
            except (ChatError, ValueError) as ex:
                print(f"[error] {getattr(ex, 'reason', ex)}\n")
    finally:
        await service.drain()
        runtime.store.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
