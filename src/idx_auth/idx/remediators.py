"""Per-remediation step handlers.

A *remediator* wraps one remediation offered by the IDX server together with
the caller's value bag and answers four questions:

* ``can_remediate()`` – are all required fields available?
* ``get_data()``      – which payload should be posted to the remediation?
* ``get_next_step()`` – what should a UI ask the user for otherwise?
* ``get_values_after_proceed()`` – which values are left for later steps?

Value-bag keys are snake_case (``username``, ``password``,
``verification_code``…); the server's camelCase field names are only used on
the wire.  :attr:`Remediator.aliases` maps every server field to the value-bag
keys that may satisfy it.  Subclasses customise individual fields by
overriding :meth:`Remediator.map_field` and :meth:`Remediator.inputs_for`.
"""

from __future__ import annotations

from typing import Any, ClassVar, Mapping, Tuple

from idx_auth.idx.types import IdxAuthenticator, IdxInput, IdxMessage, IdxRemediation
from idx_auth.models import NextStep, NextStepInput, NextStepOption, NextStepSelect

Values = dict[str, Any]


def _ui_type(inp: IdxInput) -> str:
    if inp.secret:
        return "password"
    return "text" if inp.type == "string" else inp.type


def _to_step_input(inp: IdxInput, *, name: str | None = None) -> NextStepInput:
    return NextStepInput(
        name=name or inp.name,
        type=_ui_type(inp),
        label=inp.label,
        required=inp.required,
    )


def _is_preset(inp: IdxInput) -> bool:
    """Server-filled inputs (``stateHandle`` and friends) are never collected."""
    return inp.name == "stateHandle" or (not inp.mutable and inp.value is not None)


class Remediator:
    """Base handler; concrete subclasses set :attr:`remediation_name`."""

    remediation_name: ClassVar[str] = ""
    label: ClassVar[str | None] = None
    # server field -> value-bag keys that may satisfy it, first match wins
    aliases: ClassVar[Mapping[str, Tuple[str, ...]]] = {}

    def __init__(
        self, remediation: IdxRemediation, values: Mapping[str, Any] | None = None
    ) -> None:
        self.remediation = remediation
        self.values: Values = dict(values or {})

    def __repr__(self) -> str:  # pragma: no cover
        return f"<{type(self).__name__} {self.get_name()}>"

    def get_name(self) -> str:
        return self.remediation.name

    # ------------------------------------------------------------------ #
    # value mapping                                                      #
    # ------------------------------------------------------------------ #
    def _lookup(self, name: str) -> Any:
        for key in self.aliases.get(name, (name,)):
            value = self.values.get(key)
            if value is not None and value != "":
                return value
        return None

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        """Return the submission value for server field *name* or ``None``."""
        return self._lookup(name)

    def has_data(self, name: str) -> bool:
        return self.map_field(name, self.remediation.get_input(name)) is not None

    def can_remediate(self) -> bool:
        for inp in self.remediation.value:
            if inp.required and not _is_preset(inp) and not self.has_data(inp.name):
                return False
        return True

    def get_data(self) -> Values:
        data: Values = {}
        for inp in self.remediation.value:
            if _is_preset(inp):
                continue
            value = self.map_field(inp.name, inp)
            if value is not None:
                data[inp.name] = value
        return data

    # ------------------------------------------------------------------ #
    # UI description                                                     #
    # ------------------------------------------------------------------ #
    def inputs_for(self, name: str, inp: IdxInput) -> list[NextStepInput]:
        keys = self.aliases.get(name, (name,))
        key = next((k for k in keys if k in self.values), keys[0]) if keys else name
        return [_to_step_input(inp, name=key)]

    def get_inputs(self) -> list[NextStepInput]:
        inputs: list[NextStepInput] = []
        for inp in self.remediation.value:
            if _is_preset(inp) or not inp.visible:
                continue
            inputs.extend(self.inputs_for(inp.name, inp))
        return inputs

    def get_authenticator(self) -> IdxAuthenticator | None:
        return self.remediation.relates_to

    def get_context(self) -> dict[str, Any] | None:
        authenticator = self.get_authenticator()
        if authenticator is None or not authenticator.contextual_data:
            return None
        return dict(authenticator.contextual_data)

    def get_next_step(self) -> NextStep:
        authenticator = self.get_authenticator()
        return NextStep(
            name=self.get_name(),
            label=self.label,
            inputs=tuple(self.get_inputs()),
            type=authenticator.type if authenticator else None,
            context=self.get_context(),
        )

    def get_messages(self) -> list[IdxMessage]:
        messages: list[IdxMessage] = []
        for inp in self.remediation.value:
            messages.extend(inp.messages)
            for nested in inp.form:
                messages.extend(nested.messages)
        return messages

    # ------------------------------------------------------------------ #
    # bookkeeping                                                        #
    # ------------------------------------------------------------------ #
    def _consumed_keys(self) -> set[str]:
        keys: set[str] = set()
        for inp in self.remediation.value:
            keys.add(inp.name)
            keys.update(self.aliases.get(inp.name, ()))
        keys.update(i.name for i in self.get_inputs())
        return keys

    def get_values_after_proceed(self) -> Values:
        """Drop the values this step submitted so later steps cannot reuse them."""
        consumed = self._consumed_keys()
        return {k: v for k, v in self.values.items() if k not in consumed}


# --------------------------------------------------------------------------- #
# Identification                                                              #
# --------------------------------------------------------------------------- #
class Identify(Remediator):
    remediation_name = "identify"
    label = "Sign in"
    aliases = {
        "identifier": ("username", "identifier"),
        "credentials": ("password",),
        "rememberMe": ("remember_me",),
    }

    def map_credentials(self) -> Values | None:
        password = self.values.get("password")
        return {"passcode": password} if password else None

    def get_input_credentials(self, inp: IdxInput) -> NextStepInput:
        nested = inp.form[0] if inp.form else inp
        return NextStepInput(
            name="password",
            type="password",
            label=nested.label or "Password",
            required=inp.required,
        )

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        if name == "credentials":
            return self.map_credentials()
        return super().map_field(name, inp)

    def inputs_for(self, name: str, inp: IdxInput) -> list[NextStepInput]:
        if name == "credentials":
            return [self.get_input_credentials(inp)]
        return super().inputs_for(name, inp)


class SelectEnrollProfile(Remediator):
    """Switches an identify screen into self-service registration."""

    remediation_name = "select-enroll-profile"
    label = "Sign up"

    def can_remediate(self) -> bool:
        return True

    def get_data(self) -> Values:
        return {}


class EnrollProfile(Remediator):
    """Collects the new user's profile; attribute names pass through verbatim."""

    remediation_name = "enroll-profile"
    label = "Sign up"

    def _profile_fields(self) -> Tuple[IdxInput, ...]:
        inp = self.remediation.get_input("userProfile")
        return inp.form if inp else ()

    def can_remediate(self) -> bool:
        return all(
            self.values.get(f.name) not in (None, "")
            for f in self._profile_fields()
            if f.required
        )

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        if name != "userProfile":
            return super().map_field(name, inp)
        profile = {
            f.name: self.values[f.name]
            for f in self._profile_fields()
            if self.values.get(f.name) not in (None, "")
        }
        return profile or None

    def inputs_for(self, name: str, inp: IdxInput) -> list[NextStepInput]:
        if name != "userProfile":
            return super().inputs_for(name, inp)
        return [_to_step_input(f) for f in inp.form]

    def _consumed_keys(self) -> set[str]:
        return super()._consumed_keys() | {f.name for f in self._profile_fields()}


# --------------------------------------------------------------------------- #
# Authenticator selection                                                     #
# --------------------------------------------------------------------------- #
class SelectAuthenticator(Remediator):
    """Pick one authenticator among the offered options.

    ``values["authenticator"]`` may name the authenticator by key
    (``okta_email``), type (``email``) or id.
    """

    label = "Select authenticator"
    aliases = {"authenticator": ("authenticator",)}

    def _options(self):
        inp = self.remediation.get_input("authenticator")
        return inp.options if inp else ()

    def _find_option(self):
        wanted = self.values.get("authenticator")
        if not wanted:
            return None
        for option in self._options():
            ref = option.relates_to
            if ref is not None and wanted in (ref.key, ref.type, ref.id):
                return option
        return None

    def can_remediate(self) -> bool:
        return self._find_option() is not None

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        if name != "authenticator":
            return super().map_field(name, inp)
        option = self._find_option()
        if option is None:
            return None
        data: Values = {}
        for field in option.form:
            if field.name == "methodType" and field.options:
                method = self.values.get("method_type")
                if method:
                    data["methodType"] = method
            elif field.value is not None:
                data[field.name] = field.value
        return data

    def get_next_step(self) -> NextStep:
        options = tuple(
            NextStepOption(
                label=o.label,
                value=(o.relates_to.key or o.relates_to.type or o.label)
                if o.relates_to
                else str(o.value),
            )
            for o in self._options()
        )
        return NextStep(
            name=self.get_name(),
            label=self.label,
            select=NextStepSelect(name="authenticator", options=options),
        )

    def _consumed_keys(self) -> set[str]:
        return super()._consumed_keys() | {"authenticator", "method_type"}


class SelectAuthenticatorAuthenticate(SelectAuthenticator):
    remediation_name = "select-authenticator-authenticate"

    def __init__(
        self, remediation: IdxRemediation, values: Mapping[str, Any] | None = None
    ) -> None:
        super().__init__(remediation, values)
        # a supplied password implies the password authenticator
        if self.values.get("password") and not self.values.get("authenticator"):
            if any(
                o.relates_to is not None and o.relates_to.type == "password"
                for o in self._options()
            ):
                self.values["authenticator"] = "password"


class SelectAuthenticatorEnroll(SelectAuthenticator):
    remediation_name = "select-authenticator-enroll"


# --------------------------------------------------------------------------- #
# Authenticator verification                                                  #
# --------------------------------------------------------------------------- #
class VerifyAuthenticator(Remediator):
    """Submit a passcode for the current authenticator.

    Password authenticators read ``values["password"]``; every other type
    reads ``values["verification_code"]`` or ``values["otp"]``.
    """

    label = "Verify"
    aliases = {"credentials": ()}

    def _is_password(self) -> bool:
        authenticator = self.get_authenticator()
        return authenticator is not None and authenticator.type == "password"

    def _passcode(self) -> Any:
        if self._is_password():
            return self.values.get("password") or None
        return self.values.get("verification_code") or self.values.get("otp") or None

    def can_remediate(self) -> bool:
        return self._passcode() is not None

    def map_credentials(self) -> Values | None:
        passcode = self._passcode()
        return {"passcode": passcode} if passcode is not None else None

    def get_input_credentials(self, inp: IdxInput) -> NextStepInput:
        nested = inp.form[0] if inp.form else inp
        if self._is_password():
            return NextStepInput(
                name="password", type="password", label=nested.label, required=True
            )
        return NextStepInput(
            name="verification_code",
            type=_ui_type(nested),
            label=nested.label,
            required=True,
        )

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        if name == "credentials":
            return self.map_credentials()
        return super().map_field(name, inp)

    def inputs_for(self, name: str, inp: IdxInput) -> list[NextStepInput]:
        if name == "credentials":
            return [self.get_input_credentials(inp)]
        return super().inputs_for(name, inp)

    def get_values_after_proceed(self) -> Values:
        drop = {"password"} if self._is_password() else {"verification_code", "otp"}
        return {k: v for k, v in self.values.items() if k not in drop}


class ChallengeAuthenticator(VerifyAuthenticator):
    remediation_name = "challenge-authenticator"


class EnrollAuthenticator(VerifyAuthenticator):
    remediation_name = "enroll-authenticator"
    label = "Enroll"


class ResetAuthenticator(VerifyAuthenticator):
    """Set a new password at the end of recovery."""

    remediation_name = "reset-authenticator"
    label = "Reset password"


# --------------------------------------------------------------------------- #
# Authenticator method data (phone, email…)                                   #
# --------------------------------------------------------------------------- #
class AuthenticatorData(Remediator):
    """Choose how a multi-method authenticator delivers its challenge."""

    aliases = {"authenticator": ("method_type",)}

    def _form(self) -> Tuple[IdxInput, ...]:
        inp = self.remediation.get_input("authenticator")
        return inp.form if inp else ()

    def _method_options(self) -> Tuple[NextStepOption, ...]:
        for field in self._form():
            if field.name == "methodType":
                return tuple(
                    NextStepOption(label=o.label, value=str(o.value)) for o in field.options
                )
        return ()

    def _method_type(self) -> Any:
        method = self.values.get("method_type")
        if method:
            return method
        options = self._method_options()
        # a single offered method needs no choice
        return options[0].value if len(options) == 1 else None

    def can_remediate(self) -> bool:
        return self._method_type() is not None

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        if name != "authenticator":
            return super().map_field(name, inp)
        method = self._method_type()
        if method is None:
            return None
        data: Values = {}
        for field in self._form():
            if field.name == "methodType":
                data["methodType"] = method
            elif field.value is not None:
                data[field.name] = field.value
        return data

    def get_next_step(self) -> NextStep:
        authenticator = self.get_authenticator()
        return NextStep(
            name=self.get_name(),
            label=self.label,
            select=NextStepSelect(name="method_type", options=self._method_options()),
            type=authenticator.type if authenticator else None,
        )

    def _consumed_keys(self) -> set[str]:
        return super()._consumed_keys() | {"method_type"}


class AuthenticatorVerificationData(AuthenticatorData):
    remediation_name = "authenticator-verification-data"


class AuthenticatorEnrollmentData(AuthenticatorData):
    """Like verification data, plus the phone number being enrolled."""

    remediation_name = "authenticator-enrollment-data"
    aliases = {"authenticator": ("method_type", "phone_number")}

    def can_remediate(self) -> bool:
        return super().can_remediate() and bool(self.values.get("phone_number"))

    def map_field(self, name: str, inp: IdxInput | None) -> Any:
        data = super().map_field(name, inp)
        if name == "authenticator" and data is not None:
            data["phoneNumber"] = self.values.get("phone_number")
        return data

    def get_next_step(self) -> NextStep:
        step = super().get_next_step()
        phone = next((f for f in self._form() if f.name == "phoneNumber"), None)
        label = phone.label if phone else "Phone number"
        return NextStep(
            name=step.name,
            label=step.label,
            inputs=(NextStepInput(name="phone_number", label=label, required=True),),
            select=step.select,
            type=step.type,
        )

    def _consumed_keys(self) -> set[str]:
        return super()._consumed_keys() | {"phone_number"}


# --------------------------------------------------------------------------- #
# Non-form steps                                                              #
# --------------------------------------------------------------------------- #
class RedirectIdp(Remediator):
    """External identity provider; only a browser redirect can satisfy it."""

    remediation_name = "redirect-idp"

    def can_remediate(self) -> bool:
        return False

    def get_next_step(self) -> NextStep:
        return NextStep(
            name=self.get_name(),
            type=self.remediation.type,
            href=self.remediation.href,
            idp=dict(self.remediation.idp) if self.remediation.idp else None,
        )


class Skip(Remediator):
    """Decline an optional enrollment when ``values["skip"]`` is set."""

    remediation_name = "skip"
    label = "Skip"

    def can_remediate(self) -> bool:
        return bool(self.values.get("skip"))

    def get_data(self) -> Values:
        return {}

    def _consumed_keys(self) -> set[str]:
        return {"skip"}


REMEDIATORS: dict[str, type[Remediator]] = {
    cls.remediation_name: cls
    for cls in (
        Identify,
        SelectEnrollProfile,
        EnrollProfile,
        SelectAuthenticatorAuthenticate,
        SelectAuthenticatorEnroll,
        ChallengeAuthenticator,
        EnrollAuthenticator,
        ResetAuthenticator,
        AuthenticatorVerificationData,
        AuthenticatorEnrollmentData,
        RedirectIdp,
        Skip,
    )
}
