class PlanNotFound(LookupError):
    def __init__(self, ref):
        super().__init__(f"Plan not found: {ref!r}")
        self.ref = ref


class UserNotFound(LookupError):
    def __init__(self, user_id):
        super().__init__(f"User not found: {user_id!r}")
        self.user_id = user_id
