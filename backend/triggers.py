import asyncio
import logging

from store import CALLS, CHAT_MESSAGES, LISTENERS, ResumeTokenExpired

logger = logging.getLogger(__name__)

RESTART_DELAY_SECONDS = 5


async def _dispatch(store, collection, operations, handler, name):
    """Feed change events from ``collection`` to ``handler`` until cancelled.

    The resume token is saved after each handled event, so a restarted
    stream (or a restarted process) picks up right after the last event it
    handled. Events may then be delivered twice; handlers dedupe by id.
    """
    token, loaded = None, False
    while True:
        try:
            if not loaded:
                token = await store.load_resume_token(name)
                loaded = True
                if token is not None:
                    logger.info(f"{name} resuming {collection} change stream from saved position")
            async for operation, before, after, event_token in store.watch(collection, operations, resume_after=token):
                try:
                    await handler(operation, before, after)
                except Exception as e:
                    doc_id = (after or before or {}).get("id")
                    logger.error(f"{name} failed for {collection}/{doc_id}: {e!r}")
                token = event_token
                await store.save_resume_token(name, token)
        except asyncio.CancelledError:
            raise
        except ResumeTokenExpired as e:
            logger.error(f"{name}: {e}; events since the saved position were missed, starting from now")
            token = None
        except Exception as e:
            logger.error(f"{name} change stream stopped: {e!r}; restarting in {RESTART_DELAY_SECONDS}s")
            await asyncio.sleep(RESTART_DELAY_SECONDS)


def start_triggers(store, ledger, watcher) -> list:
    async def call_updated(operation, before, after):
        await ledger.on_call_updated(before, after)

    async def message_created(operation, before, after):
        await ledger.on_message_created(after)

    async def listener_updated(operation, before, after):
        await watcher.on_listener_updated(before, after)

    tasks = [
        asyncio.create_task(_dispatch(store, CALLS, ["update", "replace"], call_updated, "onCallComplete")),
        asyncio.create_task(_dispatch(store, CHAT_MESSAGES, ["insert"], message_created, "onNewMessage")),
        asyncio.create_task(_dispatch(store, LISTENERS, ["update", "replace"], listener_updated, "onOnboardingComplete")),
    ]
    logger.info(f"Started {len(tasks)} change-stream triggers")
    return tasks


async def stop_triggers(tasks: list):
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
