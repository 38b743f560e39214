import argparse
import json

from kafka import KafkaConsumer

from .config import get_settings


def format_alert(alert: dict) -> str:
    return (
        f"[ALERT] {alert.get('timestamp')} | id={alert.get('id')} | type={alert.get('type')} | "
        f"severity={alert.get('severity')} | value={float(alert.get('metricValue', 0)):.2f} | "
        f"threshold={alert.get('thresholdValue')} | {alert.get('message')}"
    )


def send_notification(alert: dict) -> None:
    print(format_alert(alert))


def main(argv=None):
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Print alerts published to Kafka")
    parser.add_argument("--bootstrap-servers", default=settings.KAFKA_BOOTSTRAP_SERVERS or "localhost:9092")
    parser.add_argument("--topic", default=settings.KAFKA_ALERTS_TOPIC)
    args = parser.parse_args(argv)

    print(f"Connecting Kafka consumer to {args.bootstrap_servers}, topic={args.topic}")

    consumer = KafkaConsumer(
        args.topic,
        bootstrap_servers=args.bootstrap_servers,
        auto_offset_reset="latest",   # read only new alerts
        enable_auto_commit=True,
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
        group_id="syswatch_alert_notifier",
    )

    print("Waiting for alerts... (Ctrl+C to stop)\n")

    try:
        for msg in consumer:
            send_notification(msg.value)
    except KeyboardInterrupt:
        print("Stopping consumer...")
    finally:
        consumer.close()


if __name__ == "__main__":
    main()
