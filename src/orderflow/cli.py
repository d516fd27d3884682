from __future__ import annotations

import argparse
import json
import sys

import httpx

from orderflow.api import ACTOR_HEADER
from orderflow.domain.models import ASKING_STAGE_ORDER, OrderStatus, TaskPriority

_STAGES = [stage.value for stage in ASKING_STAGE_ORDER]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='orderflow', description='Drive the order lifecycle API')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Order API base URL')
    parser.add_argument('--user', required=True, help='Acting user id (sent as the actor header)')
    parser.add_argument('--api-token', default='', help='Optional API access token')

    sub = parser.add_subparsers(dest='command', required=True)

    orders = sub.add_parser('orders', help='List visible orders')
    orders.add_argument('--status', default='', choices=['', *(s.value for s in OrderStatus)])
    orders.add_argument('--revisions', action=argparse.BooleanOptionalAction, default=None, help='Only revision orders (or only originals with --no-revisions)')
    orders.add_argument('--limit', type=int, default=50)

    order = sub.add_parser('order', help='Show one order with its work items')
    order.add_argument('order_id')

    create = sub.add_parser('create-order', help='Create an order with its initial services')
    create.add_argument('--number', required=True, help='Unique order number')
    create.add_argument('--customer', required=True)
    create.add_argument('--amount', type=float, required=True)
    create.add_argument('--order-date', required=True, help='ISO datetime, e.g. 2026-03-01T09:00:00+00:00')
    create.add_argument('--delivery-date', required=True, help='ISO datetime')
    create.add_argument('--delivery-time', default='', help='Optional HH:MM')
    create.add_argument('--folder-link', default='')
    create.add_argument('--notes', default='')
    create.add_argument('--service', action='append', default=[], help='Service quantity in service_id=quantity format (repeatable)')

    verify = sub.add_parser('verify', help='Move a pending order to in progress')
    verify.add_argument('order_id')

    deliver = sub.add_parser('deliver', help='Mark an order delivered')
    deliver.add_argument('order_id')
    deliver.add_argument('--acknowledge', action='store_true', help='Acknowledge outstanding work')
    deliver.add_argument('--notes', default='')

    services = sub.add_parser('services', help='Show or replace the service quantities of an order')
    services.add_argument('order_id')
    services.add_argument('--service', action='append', default=[], help='Desired quantity in service_id=quantity format (repeatable)')
    services.add_argument('--preview', action='store_true', help='Only show the planned changes')

    assign = sub.add_parser('assign', help='Assign a task to a team member')
    assign.add_argument('task_id')
    assign.add_argument('--to', dest='user_id', required=True)
    assign.add_argument('--deadline', required=True, help='ISO datetime')
    assign.add_argument('--priority', default='MEDIUM', choices=[p.value for p in TaskPriority])
    assign.add_argument('--notes', default='')

    start = sub.add_parser('start', help='Start an assigned task')
    start.add_argument('task_id')

    pause = sub.add_parser('pause', help='Pause or resume a task')
    pause.add_argument('task_id')

    complete = sub.add_parser('complete', help='Complete a task')
    complete.add_argument('task_id')
    complete.add_argument('--notes', default='')

    stage = sub.add_parser('stage', help='Advance an asking task to a stage')
    stage.add_argument('asking_task_id')
    stage.add_argument('stage', choices=_STAGES)
    stage.add_argument('--detail', action='append', default=[], help='Stage detail in key=value format (repeatable)')

    ask_complete = sub.add_parser('ask-complete', help='Complete an asking task')
    ask_complete.add_argument('asking_task_id')
    ask_complete.add_argument('--notes', default='')

    revise = sub.add_parser('revise', help='Convert a delivered order into a revision')
    revise.add_argument('order_id')
    revise.add_argument('--task', action='append', default=[], help='Task id to carry over (repeatable)')
    revise.add_argument('--asking-task', action='append', default=[], help='Asking task id to carry over (repeatable)')

    audit = sub.add_parser('audit', help='Show the audit trail of an order')
    audit.add_argument('order_id')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _parse_service_quantities(values: list[str] | None) -> list[dict]:
    out: list[dict] = []
    for raw in values or []:
        text = str(raw or '').strip()
        if not text:
            continue
        if '=' not in text:
            raise ValueError(f'invalid --service value: {text} (expected service_id=quantity)')
        service_raw, quantity_raw = text.split('=', 1)
        service_id = service_raw.strip()
        if not service_id:
            raise ValueError(f'invalid --service id: {text}')
        try:
            quantity = int(quantity_raw.strip())
        except ValueError as exc:
            raise ValueError(f'invalid --service quantity for {service_id}: {quantity_raw}') from exc
        if quantity < 0:
            raise ValueError(f'invalid --service quantity for {service_id}: {quantity}')
        out.append({'service_id': service_id, 'quantity': quantity})
    return out


def _parse_details(values: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for raw in values or []:
        text = str(raw or '').strip()
        if not text:
            continue
        if '=' not in text:
            raise ValueError(f'invalid --detail value: {text} (expected key=value)')
        key, value = text.split('=', 1)
        if not key.strip():
            raise ValueError(f'invalid --detail key: {text}')
        out[key.strip()] = value.strip()
    return out


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')
    headers = {ACTOR_HEADER: args.user}
    if args.api_token.strip():
        headers['x-orderflow-api-token'] = args.api_token.strip()

    try:
        quantities = _parse_service_quantities(getattr(args, 'service', None))
        details = _parse_details(getattr(args, 'detail', None))
    except ValueError as exc:
        parser.error(str(exc))
        return 2

    with httpx.Client(timeout=60, headers=headers) as client:
        if args.command == 'orders':
            params: dict = {'limit': int(args.limit)}
            if args.status:
                params['status'] = args.status
            if args.revisions is not None:
                params['is_revision'] = bool(args.revisions)
            response = client.get(f'{base}/api/orders', params=params)
        elif args.command == 'order':
            response = client.get(f'{base}/api/orders/{args.order_id}')
        elif args.command == 'create-order':
            response = client.post(
                f'{base}/api/orders',
                json={
                    'order_number': args.number,
                    'customer_name': args.customer,
                    'amount': float(args.amount),
                    'order_date': args.order_date,
                    'delivery_date': args.delivery_date,
                    'delivery_time': (args.delivery_time.strip() or None),
                    'folder_link': (args.folder_link.strip() or None),
                    'notes': (args.notes.strip() or None),
                    'services': quantities,
                },
            )
        elif args.command == 'verify':
            response = client.post(f'{base}/api/orders/{args.order_id}/verify')
        elif args.command == 'deliver':
            response = client.post(
                f'{base}/api/orders/{args.order_id}/deliver',
                json={'acknowledged': bool(args.acknowledge), 'notes': (args.notes.strip() or None)},
            )
        elif args.command == 'services':
            if not quantities:
                response = client.get(f'{base}/api/orders/{args.order_id}/services')
            elif args.preview:
                response = client.post(
                    f'{base}/api/orders/{args.order_id}/services/preview',
                    json={'services': quantities},
                )
            else:
                response = client.patch(
                    f'{base}/api/orders/{args.order_id}/services',
                    json={'services': quantities},
                )
        elif args.command == 'assign':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/assign',
                json={
                    'user_id': args.user_id,
                    'deadline': args.deadline,
                    'priority': args.priority,
                    'notes': (args.notes.strip() or None),
                },
            )
        elif args.command == 'start':
            response = client.post(f'{base}/api/tasks/{args.task_id}/start')
        elif args.command == 'pause':
            response = client.post(f'{base}/api/tasks/{args.task_id}/pause')
        elif args.command == 'complete':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/complete',
                json={'notes': (args.notes.strip() or None)},
            )
        elif args.command == 'stage':
            response = client.patch(
                f'{base}/api/asking-tasks/{args.asking_task_id}/stage',
                json={'stage': args.stage, 'details': details},
            )
        elif args.command == 'ask-complete':
            response = client.patch(
                f'{base}/api/asking-tasks/{args.asking_task_id}/complete',
                json={'notes': (args.notes.strip() or None)},
            )
        elif args.command == 'revise':
            response = client.post(
                f'{base}/api/orders/{args.order_id}/convert-to-revision',
                json={'task_ids': args.task, 'asking_task_ids': args.asking_task},
            )
        elif args.command == 'audit':
            response = client.get(f'{base}/api/orders/{args.order_id}/audit')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
