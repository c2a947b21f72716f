class FakeWorkflowEngine:
    """Records dispatches; ``fail`` makes every dispatch raise."""

    def __init__(self, fail: bool = False, on_dispatch=None):
        self.fail = fail
        self.on_dispatch = on_dispatch
        self.dispatched = []
        self.cancelled = []

    async def dispatch(self, job_id, job_type, payload):
        if self.on_dispatch is not None:
            await self.on_dispatch(job_id, job_type, payload)
        if self.fail:
            raise ConnectionError("workflow engine unreachable")
        self.dispatched.append((job_id, job_type, payload))

    async def cancel(self, job_id):
        self.cancelled.append(job_id)
