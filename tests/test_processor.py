"""
Tests for the batch processor.

Runs full cycles against an in-memory mailbox and a real SQLite store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mailpilot.graph.client import MailPermissionError, MailProviderError
from mailpilot.pipeline.classifier import KeywordClassifier
from mailpilot.pipeline.processor import BatchProcessor
from mailpilot.pipeline.rules import MailRules
from mailpilot.pipeline.schemas import (
    Category,
    ClassificationResult,
    ErrorKind,
    ProcessedRecord,
    RecordStatus,
)
from mailpilot.storage.store import ProcessedStore

FOOTER = "This is an automated response."


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedClassifier:
    """Keyword answers, with failures injectable per message id or per batch."""

    def __init__(self, rules: MailRules):
        self.keyword = KeywordClassifier(rules)
        self.failing_ids: set[str] = set()
        self.batch_error = None
        self.short_batch = False
        self.before_batch = None
        self.batch_calls: list[list[str]] = []
        self.single_calls: list[str] = []

    async def classify(self, message) -> ClassificationResult:
        self.single_calls.append(message.id)
        if message.id in self.failing_ids:
            raise RuntimeError("classifier exploded")
        return self.keyword.classify_sync(message)

    async def classify_batch(self, messages) -> list[ClassificationResult]:
        self.batch_calls.append([m.id for m in messages])
        if self.before_batch is not None:
            await self.before_batch(messages)
        if self.batch_error is not None:
            raise self.batch_error
        results = [self.keyword.classify_sync(m) for m in messages]
        return results[:-1] if self.short_batch else results


@pytest.fixture
def rules() -> MailRules:
    return MailRules()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scripted(rules) -> ScriptedClassifier:
    return ScriptedClassifier(rules)


@pytest.fixture
def make_processor(store, rules, sleep):
    def _make(mailbox, classifier=None, **kwargs):
        kwargs.setdefault("batch_delay_seconds", 300)
        return BatchProcessor(
            mailbox=mailbox,
            classifier=classifier or KeywordClassifier(rules),
            store=store,
            rules=rules,
            reply_footer=FOOTER,
            sleep=sleep,
            **kwargs,
        )
    return _make


async def records_by_id(store) -> dict:
    return {r.message_id: r for r in await store.list_recent(timedelta(hours=1))}


class TestAtMostOnce:
    @pytest.mark.asyncio
    async def test_second_cycle_does_not_reply_again(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory([make_message("m1"), make_message("m2")])
        processor = make_processor(mailbox)

        first = await processor.run_cycle()
        # Pretend mark-read never happened so the messages come back.
        mailbox.marked_read.clear()
        second = await processor.run_cycle()

        assert sorted(mailbox.replied_ids()) == ["m1", "m2"]
        assert first.replied == 2
        assert first.newly_processed == 2
        assert second.replied == 0
        assert second.already_processed == 2
        assert second.newly_processed == 0

    @pytest.mark.asyncio
    async def test_new_processor_on_same_store_skips(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory([make_message("m1")])
        await make_processor(mailbox).run_cycle()

        mailbox.marked_read.clear()
        report = await make_processor(mailbox).run_cycle()

        assert mailbox.replied_ids() == ["m1"]
        assert report.already_processed == 1

    @pytest.mark.asyncio
    async def test_failed_reply_not_retried_after_restart(
        self, mailbox_factory, make_message, db_url, rules, sleep,
    ):
        """An ERROR record written before a restart still blocks the reply afterwards."""
        mailbox = mailbox_factory([make_message("m1")])
        mailbox.reply_errors["m1"] = MailProviderError("timeout")

        for _ in range(2):
            restarted = ProcessedStore.from_url(db_url, mailbox="office@uni.edu")
            try:
                processor = BatchProcessor(
                    mailbox=mailbox,
                    classifier=KeywordClassifier(rules),
                    store=restarted,
                    rules=rules,
                    reply_footer=FOOTER,
                    sleep=sleep,
                )
                report = await processor.run_cycle()
            finally:
                restarted.dispose()
            mailbox.reply_errors.clear()

        assert mailbox.replies == []
        assert report.already_processed == 1
        assert report.newly_processed == 0

    @pytest.mark.asyncio
    async def test_record_written_elsewhere_mid_cycle_is_skipped(
        self, make_processor, mailbox_factory, make_message, store, scripted,
    ):
        """Another poller records m2 after our fetch; our batch for m2 must skip it."""
        async def other_poller_finishes_m2(messages):
            if messages[0].id == "m1":
                await store.record_outcome(ProcessedRecord(
                    message_id="m2",
                    processed_at=datetime.now(timezone.utc),
                    status=RecordStatus.REPLIED,
                ))

        scripted.before_batch = other_poller_finishes_m2
        mailbox = mailbox_factory([make_message("m1"), make_message("m2")])

        report = await make_processor(mailbox, scripted, batch_size=1).run_cycle()

        assert mailbox.replied_ids() == ["m1"]
        assert scripted.batch_calls == [["m1"]]
        assert report.already_processed == 1

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_fetch_handled_once(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory([make_message("m1"), make_message("m1")])
        await make_processor(mailbox).run_cycle()
        assert mailbox.replied_ids() == ["m1"]


class TestReplies:
    @pytest.mark.asyncio
    async def test_reply_has_footer_and_message_marked_read(
        self, make_processor, mailbox_factory, make_message, store,
    ):
        mailbox = mailbox_factory([make_message("m1")])
        await make_processor(mailbox).run_cycle()

        (_, body), = mailbox.replies
        assert body.endswith(FOOTER)
        assert mailbox.marked_read == ["m1"]

        record = (await records_by_id(store))["m1"]
        assert record.status == RecordStatus.REPLIED
        assert record.reply_text == body
        assert record.classification.category == Category.QUESTION

    @pytest.mark.asyncio
    async def test_no_reply_category_is_processed_and_left_unread(
        self, make_processor, mailbox_factory, make_message, store,
    ):
        mailbox = mailbox_factory([make_message("m1", subject="Newsletter", body="Huge desconto")])
        report = await make_processor(mailbox).run_cycle()

        assert mailbox.replies == []
        assert mailbox.marked_read == []
        assert report.newly_processed == 1
        record = (await records_by_id(store))["m1"]
        assert record.status == RecordStatus.PROCESSED
        assert record.classification.category == Category.SPAM

    @pytest.mark.asyncio
    async def test_portuguese_complaint_is_high_priority_reply(
        self, make_processor, mailbox_factory, make_message, store,
    ):
        mailbox = mailbox_factory([make_message("m1", subject="Reclamação", body="Estou insatisfeito")])
        await make_processor(mailbox).run_cycle()

        record = (await records_by_id(store))["m1"]
        assert record.status == RecordStatus.REPLIED
        assert record.classification.category == Category.COMPLAINT
        assert record.classification.priority.value == "high"


class TestSystemMail:
    @pytest.mark.asyncio
    async def test_system_mail_recorded_without_classifying(
        self, make_processor, mailbox_factory, make_message, store, scripted,
    ):
        mailbox = mailbox_factory([
            make_message("s1", sender="noreply@company.com"),
            make_message("s2", subject="Undeliverable: hello", sender="person@gmail.com"),
        ])

        report = await make_processor(mailbox, scripted).run_cycle()

        assert report.system == 2
        assert scripted.batch_calls == []
        assert mailbox.replies == []
        records = await records_by_id(store)
        assert records["s1"].classification.category == Category.SYSTEM
        assert records["s1"].status == RecordStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_own_echoed_reply_is_skipped(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory(
            [make_message("e1", subject="Re: Re: Question about enrollment", sender="office@uni.edu")],
            owner="office@uni.edu",
        )
        report = await make_processor(mailbox).run_cycle()

        assert report.system == 1
        assert mailbox.replies == []

    @pytest.mark.asyncio
    async def test_owner_comes_from_store(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory([make_message("m1")])
        processor = make_processor(mailbox)

        await processor.run_cycle()
        await processor.run_cycle()

        assert mailbox.owner_calls == 0
        assert processor.owner_address == "office@uni.edu"


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_one_classifier_failure_does_not_stop_others(
        self, make_processor, mailbox_factory, make_message, store, scripted,
    ):
        scripted.batch_error = RuntimeError("batch failed")
        scripted.failing_ids = {"m2"}
        mailbox = mailbox_factory([make_message("m1"), make_message("m2"), make_message("m3")])

        report = await make_processor(mailbox, scripted, batch_size=3).run_cycle()

        assert sorted(mailbox.replied_ids()) == ["m1", "m3"]
        assert scripted.single_calls == ["m1", "m2", "m3"]
        assert report.errors == 1
        assert report.newly_processed == 3
        record = (await records_by_id(store))["m2"]
        assert record.status == RecordStatus.ERROR
        assert record.error_kind == ErrorKind.CLASSIFICATION

    @pytest.mark.asyncio
    async def test_short_batch_answer_falls_back_to_individual(
        self, make_processor, mailbox_factory, make_message, scripted,
    ):
        scripted.short_batch = True
        mailbox = mailbox_factory([make_message("m1"), make_message("m2")])

        await make_processor(mailbox, scripted, batch_size=2).run_cycle()

        assert scripted.single_calls == ["m1", "m2"]
        assert sorted(mailbox.replied_ids()) == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_permission_error_is_recorded_with_kind(
        self, make_processor, mailbox_factory, make_message, store,
    ):
        mailbox = mailbox_factory([make_message("m1"), make_message("m2")])
        mailbox.reply_errors["m1"] = MailPermissionError(
            "POST /me/messages/m1/reply returned HTTP 403", status_code=403, code="ErrorAccessDenied"
        )

        report = await make_processor(mailbox).run_cycle()

        records = await records_by_id(store)
        assert records["m1"].status == RecordStatus.ERROR
        assert records["m1"].error_kind == ErrorKind.PERMISSION
        assert "Mail.Send" in records["m1"].error_detail
        assert records["m2"].status == RecordStatus.REPLIED
        assert report.errors == 1
        assert "m1" not in mailbox.marked_read

    @pytest.mark.asyncio
    async def test_transport_error_on_reply(self, make_processor, mailbox_factory, make_message, store):
        mailbox = mailbox_factory([make_message("m1")])
        mailbox.reply_errors["m1"] = MailProviderError("timeout")

        await make_processor(mailbox).run_cycle()

        record = (await records_by_id(store))["m1"]
        assert record.error_kind == ErrorKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_failed_reply_is_not_retried_next_cycle(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory([make_message("m1")])
        mailbox.reply_errors["m1"] = MailProviderError("timeout")
        processor = make_processor(mailbox)

        await processor.run_cycle()
        del mailbox.reply_errors["m1"]
        report = await processor.run_cycle()

        assert mailbox.replies == []
        assert report.already_processed == 1

    @pytest.mark.asyncio
    async def test_mark_read_failure_still_records_reply(
        self, make_processor, mailbox_factory, make_message, store,
    ):
        mailbox = mailbox_factory([make_message("m1")])
        mailbox.mark_read_errors["m1"] = MailProviderError("503")

        await make_processor(mailbox).run_cycle()

        record = (await records_by_id(store))["m1"]
        assert record.status == RecordStatus.REPLIED
        assert "mark-read failed" in record.error_detail

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, make_processor, mailbox_factory):
        mailbox = mailbox_factory([])
        mailbox.list_error = MailProviderError("unreachable")

        with pytest.raises(MailProviderError):
            await make_processor(mailbox).run_cycle()


class TestBatching:
    @pytest.mark.asyncio
    async def test_delay_between_batches_not_after_last(
        self, make_processor, mailbox_factory, make_message, sleep, scripted,
    ):
        mailbox = mailbox_factory([make_message(f"m{i}") for i in range(5)])

        await make_processor(mailbox, scripted, batch_size=2, batch_delay_seconds=300).run_cycle()

        assert scripted.batch_calls == [["m0", "m1"], ["m2", "m3"], ["m4"]]
        assert sleep.calls == [300, 300]

    @pytest.mark.asyncio
    async def test_single_batch_has_no_delay(self, make_processor, mailbox_factory, make_message, sleep):
        mailbox = mailbox_factory([make_message("m1")])
        await make_processor(mailbox).run_cycle()
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_fetch_limit_passed_to_mailbox(self, make_processor, mailbox_factory, make_message):
        mailbox = mailbox_factory([make_message(f"m{i}") for i in range(5)])
        report = await make_processor(mailbox, fetch_limit=3, batch_delay_seconds=0).run_cycle()
        assert report.fetched == 3

    def test_rejects_zero_batch_size(self, make_processor, mailbox_factory):
        with pytest.raises(ValueError):
            make_processor(mailbox_factory([]), batch_size=0)
