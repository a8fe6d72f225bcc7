"""
Job Queue — bounded-concurrency delivery queues.

- TaskQueue holds pending jobs FIFO and gates how many run at once
- Dispatcher drains a TaskQueue into a delivery capability whenever a job
  arrives or a running one completes
"""
from job_queue.task_queue import QueueFullError, TaskQueue
from job_queue.dispatcher import DeliveryCapability, Dispatcher

__all__ = ["TaskQueue", "QueueFullError", "Dispatcher", "DeliveryCapability"]
