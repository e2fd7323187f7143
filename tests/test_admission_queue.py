from framix_server.services.jobs import AdmissionQueue


def test_queue_is_fifo() -> None:
    queue = AdmissionQueue()
    for job_id in ("a", "b", "c"):
        queue.enqueue(job_id)

    assert [queue.pop_next(), queue.pop_next(), queue.pop_next()] == ["a", "b", "c"]
    assert queue.pop_next() is None


def test_enqueue_returns_zero_based_position() -> None:
    queue = AdmissionQueue()

    assert queue.enqueue("a") == 0
    assert queue.enqueue("b") == 1
    assert queue.position("b") == 1
    assert queue.position("missing") is None


def test_enqueue_does_not_duplicate_ids() -> None:
    queue = AdmissionQueue()
    queue.enqueue("a")
    queue.enqueue("b")

    assert queue.enqueue("a") == 0
    assert queue.snapshot() == ["a", "b"]


def test_remove_by_value_keeps_order_of_the_rest() -> None:
    queue = AdmissionQueue()
    for job_id in ("a", "b", "c"):
        queue.enqueue(job_id)

    assert queue.remove("b") is True
    assert queue.remove("b") is False
    assert queue.snapshot() == ["a", "c"]
    assert queue.position("c") == 1
    assert len(queue) == 2
    assert "b" not in queue


def test_requeue_front_puts_id_back_at_head() -> None:
    queue = AdmissionQueue()
    queue.enqueue("a")
    queue.enqueue("b")
    popped = queue.pop_next()
    assert popped == "a"

    queue.requeue_front(popped)

    assert queue.snapshot() == ["a", "b"]
