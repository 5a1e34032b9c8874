"""
Module: expense_kernel.selectors.user_selector
Responsibility: Read access to users, their departments, and the reporting
    (manager) chain.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Manager-chain traversal is bounded by max_depth and keeps a visited
      set, so cyclic or very deep manager data terminates.
"""

from uuid import UUID

from sqlalchemy import select

from expense_kernel.models.organization import User
from expense_kernel.selectors.base import BaseSelector

DEFAULT_CHAIN_DEPTH = 10


class UserSelector(BaseSelector):

    def get_user(self, user_id: UUID) -> User | None:
        return self.session.get(User, user_id)

    def get_users(self, user_ids: list[UUID]) -> list[User]:
        if not user_ids:
            return []
        return list(
            self.session.execute(select(User).where(User.id.in_(user_ids))).scalars()
        )

    def get_department_id(self, user_id: UUID) -> UUID | None:
        return self.session.execute(
            select(User.department_id).where(User.id == user_id)
        ).scalar_one_or_none()

    def manager_chain(self, user_id: UUID, max_depth: int = DEFAULT_CHAIN_DEPTH) -> list[UUID]:
        """
        Managers above ``user_id``, nearest first.

        Stops after ``max_depth`` hops or on the first repeated id.
        """
        chain: list[UUID] = []
        visited: set[UUID] = {user_id}
        current = user_id

        for _ in range(max_depth):
            manager_id = self.session.execute(
                select(User.manager_id).where(User.id == current)
            ).scalar_one_or_none()
            if manager_id is None or manager_id in visited:
                break
            chain.append(manager_id)
            visited.add(manager_id)
            current = manager_id

        return chain

    def is_in_manager_chain(
        self,
        approver_id: UUID,
        submitter_id: UUID,
        max_depth: int = DEFAULT_CHAIN_DEPTH,
    ) -> bool:
        return approver_id in self.manager_chain(submitter_id, max_depth)
