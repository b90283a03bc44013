"""Turn-driving orchestrator for multi-turn document distillation.

Why not a task queue or a workflow engine?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
A distillation job is one long, strictly sequential conversation with a
remote model: upload a book once, ask for the first section, then keep saying
"Next" until the model emits the end marker.  What needs care is not
scheduling but the control loop around that conversation:

- Upload + asynchronous processing of the source artifact before the first turn.
- Streaming partial output into a document that must never show a fragment of
  a failed or paused attempt.
- Retry with bounded exponential backoff, a display countdown, and manual retry
  that knows whether the artifact must be re-attached.
- Pause at turn boundaries and unconditional Stop that invalidates late results.

One ``asyncio`` task per job (:class:`~book_distiller.distiller.state_machine.JobStateMachine`)
covers all of that without an external broker.
"""
