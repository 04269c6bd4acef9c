# tests/test_cancel_scope.py
"""
Tests for cancelable-scope classification and the goroutine origination
pass.
"""

from ssadata_shims.cancel_scope import (
    CancelCatalog, CancelScopeTracker, EscapeReason, ScopeState,
    find_goroutine_originations, goroutine_bodies, track_cancel_scopes,
)
from ssadata_shims.ir_builder import FunctionBuilder, external_function
from ssadata_shims.ssa_ir import Global

from tests.conftest import (
    BACKGROUND, CANCEL, CTX, PRINTLN, TODO, WITH_DEADLINE, WITH_TIMEOUT,
    cancel_pair, make_program,
)

REGISTER = external_function("example.com/jobs", "Register", [CANCEL])


def _ctx_fn(name="work", results=()):
    return FunctionBuilder(name, [("ctx", CTX)], results)


def _track(b):
    return CancelScopeTracker(b.build()).run()


class TestDischarged:

    def test_deferred(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        d = b.defer(cancel)
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED
        assert scope.evidence is d
        assert not scope.is_leaked

    def test_called_later_in_same_block(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"), WITH_TIMEOUT, b.const(5, "time.Duration"))
        b.call(cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED

    def test_called_on_every_branch(self):
        b = FunctionBuilder("work", [("ctx", CTX), ("c", "bool")])
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        left, right = b.new_block(), b.new_block()
        b.if_(b.param("c"), left, right)
        for block in (left, right):
            b.set_block(block)
            b.call(cancel)
            b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED

    def test_alias_through_local_cell(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        cell = b.alloc(CANCEL, heap=False)
        b.store(cell, cancel)
        b.defer(b.load(cell))
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED
        assert len(scope.aliases) == 2

    def test_handed_to_function_that_calls_it(self):
        release = FunctionBuilder("release", [("cancel", CANCEL)])
        release.call(release.param("cancel"))
        release.ret()
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        call = b.call(release.build(), cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED
        assert scope.evidence is call

    def test_deferred_hand_off(self):
        release = FunctionBuilder("release", [("cancel", CANCEL)])
        release.call(release.param("cancel"))
        release.ret()
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        d = b.defer(release.build(), cancel)
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED
        assert scope.evidence is d

    def test_hand_off_through_two_functions(self):
        inner = FunctionBuilder("stop", [("f", CANCEL)])
        inner.call(inner.param("f"))
        inner.ret()
        outer = FunctionBuilder("release", [("cancel", CANCEL)])
        outer.call(inner.build(), outer.param("cancel"))
        outer.ret()
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.defer(outer.build(), cancel)
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED

    def test_field_read_back_and_deferred(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        job = b.composite("main.Job")
        b.store_field(job, "Cancel", cancel, CANCEL)
        d = b.defer(b.load_field(job, "Cancel", CANCEL))
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED
        assert scope.evidence is d

    def test_received_from_channel_and_called(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        ch = b.make_chan(f"chan {CANCEL}", 1)
        b.send(ch, cancel)
        b.call(b.recv(ch))
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED

    def test_deferred_closure_calls_handle(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        c = b.closure(free_vars=[("cancel", CANCEL)])
        c.call(c.free_var("cancel"))
        c.ret()
        b.defer(b.make_closure(c, cancel))
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.DISCHARGED

    def test_closure_capturing_without_calling(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        c = b.closure(free_vars=[("cancel", CANCEL)])
        c.ret()
        b.defer(b.make_closure(c, cancel))
        b.run_defers()
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_creation_in_loop_is_one_scope(self):
        b = FunctionBuilder("work", [("ctx", CTX), ("n", "int")])
        head, body, done = b.new_block(), b.new_block(), b.new_block()
        b.jump(head)
        b.set_block(head)
        i = b.phi("int", [(b.fn.entry, 0)])
        b.if_(b.binop("<", i, b.param("n")), body, done)
        b.set_block(body)
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.defer(cancel)
        b.add_incoming(i, body, b.binop("+", i, 1))
        b.jump(head)
        b.set_block(done)
        b.run_defers()
        b.ret()
        scopes = _track(b)
        assert len(scopes) == 1
        assert scopes[0].state is ScopeState.DISCHARGED


class TestEscaped:

    def test_handle_discarded(self):
        b = _ctx_fn()
        pair = b.call(WITH_DEADLINE, b.param("ctx"), b.const(0, "time.Time"))
        b.extract(pair, 0)
        b.ret()
        [scope] = _track(b)
        assert scope.state is ScopeState.ESCAPED
        assert scope.reason is EscapeReason.DISCARDED
        assert scope.is_leaked

    def test_handle_returned(self):
        b = _ctx_fn(results=[CTX, CANCEL])
        _, ctx2, cancel = cancel_pair(b, b.param("ctx"))
        b.ret(ctx2, cancel)
        [scope] = _track(b)
        assert scope.reason is EscapeReason.RETURNED

    def test_cancel_on_one_branch_only(self):
        b = FunctionBuilder("work", [("ctx", CTX), ("c", "bool")])
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        left, right = b.new_block(), b.new_block()
        b.if_(b.param("c"), left, right)
        b.set_block(left)
        b.call(cancel)
        b.ret()
        b.set_block(right)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_kept_in_local_only(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        cell = b.alloc(CANCEL, heap=False)
        b.store(cell, cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_extracted_but_unused(self):
        b = _ctx_fn()
        cancel_pair(b, b.param("ctx"))
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_passed_to_library_function(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.call(REGISTER, cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_printed(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.call(PRINTLN, b.varargs(cancel))
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_handed_to_function_that_ignores_it(self):
        keep = FunctionBuilder("keep", [("cancel", CANCEL)])
        keep.ret()
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.call(keep.build(), cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_stored_in_struct_field(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        job = b.composite("main.Job")
        b.store_field(job, "Cancel", cancel, CANCEL)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_stored_in_slice_element(self):
        b = FunctionBuilder("work", [("ctx", CTX), ("jobs", f"[]{CANCEL}")])
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.store(b.index_addr(b.param("jobs"), 0, CANCEL), cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_stored_in_global(self):
        stop = Global(name="stop", type=f"*{CANCEL}", package="main")
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        b.store(stop, cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_sent_on_channel(self):
        b = _ctx_fn()
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        ch = b.make_chan(f"chan {CANCEL}", 1)
        b.send(ch, cancel)
        b.ret()
        [scope] = _track(b)
        assert scope.reason is EscapeReason.NEVER_INVOKED

    def test_returned_inside_struct(self):
        b = _ctx_fn(results=["*main.Job"])
        _, _, cancel = cancel_pair(b, b.param("ctx"))
        job = b.composite("main.Job", {"Cancel": cancel})
        b.ret(job)
        [scope] = _track(b)
        assert scope.reason is EscapeReason.RETURNED

    def test_repr(self):
        b = _ctx_fn()
        b.call(WITH_TIMEOUT, b.param("ctx"), 5)
        b.ret()
        [scope] = _track(b)
        assert repr(scope) == "CancelableScope(main.work, escaped, discarded)"


class TestTracking:

    def test_program_wide(self):
        a = _ctx_fn("a")
        _, _, cancel = cancel_pair(a, a.param("ctx"))
        a.defer(cancel)
        a.run_defers()
        a.ret()
        b = _ctx_fn("b")
        cancel_pair(b, b.param("ctx"))
        b.ret()
        scopes = track_cancel_scopes(make_program(a.build(), b.build()))
        assert [s.function.name for s in scopes] == ["a", "b"]
        assert [s.is_leaked for s in scopes] == [False, True]

    def test_custom_creators(self):
        make = external_function("example.com/jobs", "WithJob", [CTX], [CTX, CANCEL])
        b = _ctx_fn()
        cancel_pair(b, b.param("ctx"), make)
        b.ret()
        fn = b.build()
        assert CancelScopeTracker(fn).run() == []
        catalog = CancelCatalog(creators={"example.com/jobs.WithJob"})
        assert len(CancelScopeTracker(fn, catalog).run()) == 1


class TestGoroutineOriginations:

    def test_background_in_goroutine(self):
        b = _ctx_fn("serve")
        c = b.closure()
        bg = c.call(BACKGROUND)
        c.ret()
        spawn = b.go(b.make_closure(c))
        b.ret()
        found = find_goroutine_originations(make_program(b.build()))
        assert len(found) == 1
        assert found[0].origination is bg
        assert found[0].spawn is spawn
        assert found[0].function.full_name == "main.serve$1"

    def test_todo_in_named_goroutine(self):
        worker = FunctionBuilder("worker")
        worker.call(TODO)
        worker.ret()
        b = _ctx_fn("serve")
        b.go(worker.fn)
        b.ret()
        assert len(find_goroutine_originations(make_program(b.build(), worker.build()))) == 1

    def test_reported_once_for_two_spawns(self):
        worker = FunctionBuilder("worker")
        worker.call(BACKGROUND)
        worker.ret()
        b = _ctx_fn("serve")
        b.go(worker.fn)
        b.go(worker.fn)
        b.ret()
        assert len(find_goroutine_originations(make_program(b.build(), worker.build()))) == 1

    def test_no_context_in_spawner(self):
        b = FunctionBuilder("main")
        c = b.closure()
        c.call(BACKGROUND)
        c.ret()
        b.go(b.make_closure(c))
        b.ret()
        assert find_goroutine_originations(make_program(b.build())) == []

    def test_spawner_own_background_does_not_count(self):
        b = FunctionBuilder("main")
        b.call(BACKGROUND)
        c = b.closure()
        c.call(BACKGROUND)
        c.ret()
        b.go(b.make_closure(c))
        b.ret()
        assert find_goroutine_originations(make_program(b.build())) == []

    def test_nested_goroutine_not_examined(self):
        b = _ctx_fn("serve")
        outer = b.closure(free_vars=[("ctx", CTX)])
        inner = outer.closure()
        inner.call(BACKGROUND)
        inner.ret()
        outer.go(outer.make_closure(inner))
        outer.ret()
        b.go(b.make_closure(outer, b.param("ctx")))
        b.ret()
        assert find_goroutine_originations(make_program(b.build())) == []

    def test_plain_call_is_not_a_goroutine(self):
        b = _ctx_fn("serve")
        c = b.closure()
        c.call(BACKGROUND)
        c.ret()
        b.call(b.make_closure(c))
        b.ret()
        assert find_goroutine_originations(make_program(b.build())) == []

    def test_goroutine_bodies(self):
        worker = FunctionBuilder("worker")
        worker.ret()
        b = _ctx_fn("serve")
        c = b.closure()
        c.ret()
        b.go(worker.fn)
        b.call(b.make_closure(c))
        b.ret()
        bodies = goroutine_bodies(make_program(b.build(), worker.build()))
        assert list(bodies) == ["main.worker"]
