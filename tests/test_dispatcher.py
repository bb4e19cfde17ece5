import pytest

from credilife.schemas.notification_schema import ChannelEnum
from credilife.services.dispatcher import NotificationDispatcher

from tests.conftest import RecordingEmailSender, RecordingMessageSender, make_payment, make_rule


@pytest.mark.asyncio
async def test_email_failure_does_not_stop_whatsapp(failing_email_dispatcher, whatsapp_sender, notification_log):
    rule = make_rule(email=True, whatsapp=True)
    results = await failing_email_dispatcher.dispatch(make_payment(), rule, 7)

    assert [(r.channel, r.success) for r in results] == [
        (ChannelEnum.email, False),
        (ChannelEnum.whatsapp, True),
    ]
    assert results[0].error == "SMTP connection refused"
    assert len(whatsapp_sender.sent) == 1

    stats = await notification_log.stats()
    assert stats.total_notifications == 2
    assert stats.failed_notifications == 1


@pytest.mark.asyncio
async def test_missing_contact_is_skipped_without_result(dispatcher, email_sender):
    rule = make_rule(email=True, whatsapp=True)
    payment = make_payment(phone="")

    results = await dispatcher.dispatch(payment, rule, 3)

    assert [r.channel for r in results] == [ChannelEnum.email]
    assert len(email_sender.sent) == 1


@pytest.mark.asyncio
async def test_channel_without_sender_is_skipped(dispatcher):
    rule = make_rule(email=False, sms=True)
    assert await dispatcher.dispatch(make_payment(), rule, 3) == []


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failed_result(notification_log):
    senders = {ChannelEnum.sms: RecordingMessageSender("sms", error=RuntimeError("socket closed"))}
    dispatcher = NotificationDispatcher(senders, log=notification_log)

    results = await dispatcher.dispatch(make_payment(), make_rule(email=False, sms=True), -1)

    assert len(results) == 1
    assert results[0].success is False
    assert results[0].error == "socket closed"


@pytest.mark.asyncio
async def test_unsuccessful_send_result_is_recorded_as_failure(notification_log):
    dispatcher = NotificationDispatcher({ChannelEnum.email: RecordingEmailSender(fail=True)}, log=notification_log)
    results = await dispatcher.dispatch(make_payment(), make_rule(), 7)

    assert results[0].success is False
    assert results[0].error == "mailbox full"


@pytest.mark.asyncio
async def test_result_carries_rule_and_installment(dispatcher, email_sender):
    payment = make_payment(loan_id="loan-9", installment_number=4)
    results = await dispatcher.dispatch(payment, make_rule(id="rule-7"), 7)

    assert results[0].loan_id == "loan-9"
    assert results[0].customer_id == "cust-1"
    assert results[0].rule_id == "rule-7"
    assert results[0].installment_number == 4
    assert results[0].message_id == "email-1"
    assert email_sender.sent[0]["to"] == "ana@example.com"


@pytest.mark.asyncio
async def test_rule_template_reference_is_used(dispatcher, whatsapp_sender):
    dispatcher.templates.load_records([{"id": "wa-1", "channel": "whatsapp", "body": "Hi {{customer_name}}"}])
    rule = make_rule(email=False, whatsapp=True, whatsapp_template_id="wa-1")

    await dispatcher.dispatch(make_payment(), rule, 7)

    assert whatsapp_sender.sent[0]["message"] == "Hi Ana Santos"


@pytest.mark.asyncio
async def test_unconfigured_sender_is_skipped(notification_log):
    sender = RecordingEmailSender()
    sender.configured = False
    dispatcher = NotificationDispatcher({ChannelEnum.email: sender}, log=notification_log)

    assert await dispatcher.dispatch(make_payment(), make_rule(), 7) == []
    assert sender.sent == []
