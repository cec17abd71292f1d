"""DynamoDB store for linked accounts and their calendar selections."""
import logging
from typing import Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from availability.models import Account, Calendar

logger = logging.getLogger(__name__)

ACCOUNT_RECORD = 'account'
CALENDAR_PREFIX = 'calendar#'


class AccountStore:
    """
    Manager for the accounts table.

    Every item is keyed by `account_id` (hash) and `record_id` (range). The
    account itself lives under record_id "account"; each of its calendars
    under "calendar#<calendar_id>".
    """

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized AccountStore for table: {table_name}")

    def get_accounts(self) -> List[Account]:
        """
        Retrieve every linked account.

        Returns:
            Accounts ordered by email
        """
        items = self._scan(Attr('record_id').eq(ACCOUNT_RECORD))
        accounts = [
            account for account in (self._item_to_account(item) for item in items)
            if account
        ]
        logger.info(f"Retrieved {len(accounts)} accounts from DynamoDB")
        return sorted(accounts, key=lambda account: account.email)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            response = self.table.get_item(
                Key={'account_id': account_id, 'record_id': ACCOUNT_RECORD}
            )
        except ClientError as e:
            logger.error(f"Error reading account {account_id}: {e}")
            raise
        item = response.get('Item')
        return self._item_to_account(item) if item else None

    def add_account(self, account: Account) -> None:
        """
        Store a newly linked account.

        Raises:
            ValueError: If an account with the same email and platform exists
        """
        for existing in self.get_accounts():
            if existing.email == account.email and existing.platform == account.platform:
                raise ValueError(
                    f"Account already exists for {account.email} on {account.platform}"
                )

        try:
            self.table.put_item(Item=self._account_to_item(account))
        except ClientError as e:
            logger.error(f"Error storing account {account.email}: {e}")
            raise
        logger.info(f"Added {account.platform} account {account.email}")

    def remove_account(self, account_id: str) -> int:
        """
        Delete an account together with its calendars.

        Returns:
            Count of deleted items
        """
        items = self._query(account_id)
        deleted = self._batch_delete([item['record_id'] for item in items], account_id)
        logger.info(f"Removed account {account_id} ({deleted} items)")
        return deleted

    def update_refresh_token(self, account_id: str, refresh_token: str) -> None:
        try:
            self.table.update_item(
                Key={'account_id': account_id, 'record_id': ACCOUNT_RECORD},
                UpdateExpression='SET refresh_token = :token',
                ExpressionAttributeValues={':token': refresh_token}
            )
        except ClientError as e:
            logger.error(f"Error updating refresh token for {account_id}: {e}")
            raise
        logger.info(f"Stored rotated refresh token for account {account_id}")

    def get_calendars(self, account_id: str) -> List[Calendar]:
        items = self._query(account_id, CALENDAR_PREFIX)
        return [
            calendar for calendar in (self._item_to_calendar(item) for item in items)
            if calendar
        ]

    def get_query_calendar_ids(self, account_id: str) -> List[str]:
        """Ids of the account's calendars included in availability searches."""
        return [
            calendar.calendar_id
            for calendar in self.get_calendars(account_id)
            if calendar.query_selected
        ]

    def replace_calendars(self, account_id: str, calendars: List[Calendar]) -> int:
        """
        Replace the cached calendar list of an account.

        Args:
            account_id: Owning account
            calendars: Calendars to store

        Returns:
            Count of successfully written calendars

        Calendars missing from the new list are deleted only once every
        write has succeeded, so a failed batch leaves the previous list.
        """
        existing = self._query(account_id, CALENDAR_PREFIX)

        logger.info(f"Writing {len(calendars)} calendars for account {account_id}")
        success_count = 0

        for i in range(0, len(calendars), self.BATCH_SIZE):
            batch = calendars[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for calendar in batch:
                        writer.put_item(Item=self._calendar_to_item(account_id, calendar))
                # batch_writer flushes on exit
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error writing batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        if success_count < len(calendars):
            logger.warning(
                f"Kept stale calendars for account {account_id}: "
                f"{len(calendars) - success_count} writes failed"
            )
            return success_count

        current = {f'{CALENDAR_PREFIX}{calendar.calendar_id}' for calendar in calendars}
        stale = [item['record_id'] for item in existing if item['record_id'] not in current]
        self._batch_delete(stale, account_id)

        return success_count

    def set_query_calendars(self, account_id: str, calendar_ids: List[str]) -> int:
        """
        Include exactly the given calendars of an account in searches.

        Returns:
            Count of query-selected calendars

        Raises:
            ValueError: If an id does not name a calendar of the account
        """
        calendars = self.get_calendars(account_id)
        known = {calendar.calendar_id for calendar in calendars}
        unknown = sorted(set(calendar_ids) - known)
        if unknown:
            raise ValueError(f"Unknown calendars for account {account_id}: {unknown}")

        selected = set(calendar_ids)
        try:
            for calendar in calendars:
                self.table.update_item(
                    Key={
                        'account_id': account_id,
                        'record_id': f'{CALENDAR_PREFIX}{calendar.calendar_id}'
                    },
                    UpdateExpression='SET query_selected = :selected',
                    ExpressionAttributeValues={
                        ':selected': calendar.calendar_id in selected
                    }
                )
        except ClientError as e:
            logger.error(f"Error selecting query calendars for {account_id}: {e}")
            raise

        logger.info(f"Selected {len(selected)} query calendars for account {account_id}")
        return len(selected)

    def get_hold_event_calendar(self) -> Optional[Tuple[Account, Calendar]]:
        """
        Find the calendar hold events are written to.

        Returns:
            (account, calendar) pair, or None if none is edit-selected
        """
        items = self._scan(
            Attr('record_id').begins_with(CALENDAR_PREFIX) & Attr('edit_selected').eq(True)
        )
        for item in items:
            calendar = self._item_to_calendar(item)
            if not calendar:
                continue
            account = self.get_account(calendar.account_id)
            if account:
                return account, calendar
        return None

    def set_hold_event_calendar(self, account_id: str, calendar_id: str) -> None:
        """
        Make one calendar the only edit-selected calendar.

        The target is selected first; if it does not exist the conditional
        update fails and the previous selection is left untouched.
        """
        record_id = f'{CALENDAR_PREFIX}{calendar_id}'
        current = self._scan(
            Attr('record_id').begins_with(CALENDAR_PREFIX) & Attr('edit_selected').eq(True)
        )
        try:
            self._set_edit_selected(account_id, record_id, True)
            for item in current:
                if item['account_id'] == account_id and item['record_id'] == record_id:
                    continue
                self._set_edit_selected(item['account_id'], item['record_id'], False)
        except ClientError as e:
            logger.error(f"Error selecting hold event calendar {calendar_id}: {e}")
            raise
        logger.info(f"Hold events will be created in calendar {calendar_id}")

    def _set_edit_selected(self, account_id: str, record_id: str, selected: bool) -> None:
        self.table.update_item(
            Key={'account_id': account_id, 'record_id': record_id},
            UpdateExpression='SET edit_selected = :selected',
            ConditionExpression='attribute_exists(record_id)',
            ExpressionAttributeValues={':selected': selected}
        )

    def _scan(self, filter_expression) -> List[Dict]:
        try:
            response = self.table.scan(FilterExpression=filter_expression)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    FilterExpression=filter_expression,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
            return items

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise

    def _query(self, account_id: str, prefix: Optional[str] = None) -> List[Dict]:
        condition = Key('account_id').eq(account_id)
        if prefix:
            condition = condition & Key('record_id').begins_with(prefix)

        try:
            response = self.table.query(KeyConditionExpression=condition)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.query(
                    KeyConditionExpression=condition,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
            return items

        except ClientError as e:
            logger.error(f"Error querying account {account_id}: {e}")
            raise

    def _batch_delete(self, record_ids: List[str], account_id: str) -> int:
        if not record_ids:
            return 0

        success_count = 0
        for i in range(0, len(record_ids), self.BATCH_SIZE):
            batch = record_ids[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for record_id in batch:
                        writer.delete_item(
                            Key={'account_id': account_id, 'record_id': record_id}
                        )
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        return success_count

    def _item_to_account(self, item: dict) -> Optional[Account]:
        try:
            return Account(
                account_id=item['account_id'],
                email=item['email'],
                platform=item['platform'],
                refresh_token=item['refresh_token']
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to Account: {e}")
            return None

    def _item_to_calendar(self, item: dict) -> Optional[Calendar]:
        try:
            return Calendar(
                account_id=item['account_id'],
                calendar_id=item['calendar_id'],
                name=item['name'],
                query_selected=bool(item.get('query_selected', True)),
                edit_selected=bool(item.get('edit_selected', False)),
                can_edit=bool(item.get('can_edit', False))
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to Calendar: {e}")
            return None

    def _account_to_item(self, account: Account) -> dict:
        return {
            'account_id': account.account_id,
            'record_id': ACCOUNT_RECORD,
            'email': account.email,
            'platform': account.platform,
            'refresh_token': account.refresh_token
        }

    def _calendar_to_item(self, account_id: str, calendar: Calendar) -> dict:
        return {
            'account_id': account_id,
            'record_id': f'{CALENDAR_PREFIX}{calendar.calendar_id}',
            'calendar_id': calendar.calendar_id,
            'name': calendar.name,
            'query_selected': calendar.query_selected,
            'edit_selected': calendar.edit_selected,
            'can_edit': calendar.can_edit
        }
