import asyncio

import pytest

from django_async_render import (
    AsyncView,
    CycleState,
    MissingProgressDeclaration,
    async_view,
    collect_seeds,
    plant,
    use_previous_props,
    use_progress,
    use_render_event,
)
from django_async_render.testing import async_render_test

from .testutils import record_outputs, setup_test_config

setup_test_config()


@async_render_test
class TestUseProgress:
    async def test_renders_view(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            show("Initial", "initial")
            await asyncio.sleep(0.1)
            return "Done"

        view = Test({})
        outputs = record_outputs(view)
        view.mount()

        assert view.output == "Initial"
        await asyncio.sleep(0.25)
        assert view.output == "Done"
        assert outputs == [None, "Initial", "Done"]

    async def test_shows_last_progress_when_none_is_returned(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            show("Initial", "initial")
            await asyncio.sleep(0.1)
            show("Done")

        view = Test({})
        view.mount()

        assert view.output == "Initial"
        await asyncio.sleep(0.25)
        assert view.output == "Done"
        assert view.cycle.state is CycleState.RESOLVED

    async def test_does_not_render_progress_when_body_resolves_quickly(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress(200)

            show("Initial", "initial")
            await asyncio.sleep(0.025)
            show("Progress")
            await asyncio.sleep(0.05)
            show("Done")

        view = Test({})
        outputs = record_outputs(view)
        view.mount()

        assert view.output == "Initial"
        await asyncio.sleep(0.15)
        assert view.output == "Done"
        assert "Progress" not in outputs

    async def test_renders_progress_when_body_resolves_slowly(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress(50)

            show("Initial", "initial")
            await asyncio.sleep(0.025)
            show("Progress")
            await asyncio.sleep(0.1)
            show("Done")

        view = Test({})
        view.mount()

        assert view.output == "Initial"
        await asyncio.sleep(0.075)
        assert view.output == "Progress"
        await asyncio.sleep(0.15)
        assert view.output == "Done"

    async def test_unlabeled_progress_never_shown_before_delay(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress(200)

            show("Initial")
            await asyncio.sleep(0.1)
            return "Done"

        view = Test({})
        outputs = record_outputs(view)
        view.mount()

        assert view.output is None
        await asyncio.sleep(0.25)
        assert outputs == [None, None, "Done"]

    async def test_unlabeled_progress_shown_after_delay(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress(50)

            show("Initial")
            await asyncio.sleep(0.025)
            show("Progress")
            await asyncio.sleep(0.1)
            return "Done"

        view = Test({})
        outputs = record_outputs(view)
        view.mount()

        assert view.output is None
        await asyncio.sleep(0.075)
        assert view.output == "Progress"
        await asyncio.sleep(0.15)
        assert view.output == "Done"
        assert "Initial" not in outputs

    async def test_delay_from_decorator(self):
        @async_view(delay_empty=0)
        async def Test(props):
            show, _, _ = use_progress()

            show("Loading")
            await asyncio.sleep(0.02)
            return "Done"

        view = Test({})
        view.mount()

        assert view.output == "Loading"

    @async_render_test(
        django_settings={
            "ASYNC_RENDER": {"DELAY_EMPTY": 0},
        },
    )
    async def test_delay_from_settings(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            show("Loading")
            await asyncio.sleep(0.02)
            return "Done"

        view = Test({})
        view.mount()

        assert view.output == "Loading"

    async def test_missing_progress_declaration(self):
        @async_view
        async def Test(props):
            await asyncio.sleep(0.01)
            return "Done"

        view = Test({})
        view.mount()

        assert view.output is None
        assert isinstance(view.error, MissingProgressDeclaration)
        assert "suspended without declaring interim output" in str(view.error)

    async def test_progress_not_required_when_progress_disabled(self):
        @async_view(show_progress=False)
        async def Test(props):
            await asyncio.sleep(0.01)
            return "Done"

        view = Test({})
        view.mount()

        assert view.output is None
        assert view.error is None
        await asyncio.sleep(0.05)
        assert view.output == "Done"

    @async_render_test(
        django_settings={
            "ASYNC_RENDER": {"REQUIRE_PROGRESS": False},
        },
    )
    async def test_progress_not_required_by_settings(self):
        @async_view
        async def Test(props):
            await asyncio.sleep(0.01)
            return "Done"

        view = Test({})
        view.mount()

        assert view.error is None
        await asyncio.sleep(0.05)
        assert view.output == "Done"

    def test_hook_outside_render(self):
        with pytest.raises(RuntimeError, match="No render cycle is active"):
            use_progress()


@async_render_test
class TestUseRenderEvent:
    async def test_fires_progress_event(self):
        events = []

        @async_view
        async def Test(props):
            show, _, _ = use_progress(50)

            use_render_event("progress", events.append)

            show("Initial", "initial")
            await asyncio.sleep(0.025)
            show("Progress")
            await asyncio.sleep(0.1)
            show("Done")

        view = Test({})
        view.mount()

        await asyncio.sleep(0.15)
        assert view.output == "Done"
        assert len(events) == 3
        assert events[1].target is view
        assert events[1].elapsed > 20

    async def test_fires_complete_event_when_none_is_returned(self):
        events = []

        @async_view
        async def Test(props):
            show, _, _ = use_progress(50)

            use_render_event("complete", events.append)

            show("Initial", "initial")
            await asyncio.sleep(0.025)
            show("Progress")
            await asyncio.sleep(0.1)
            show("Done")

        view = Test({})
        view.mount()

        await asyncio.sleep(0.15)
        assert view.output == "Done"
        assert len(events) == 1
        assert events[0].target is view
        assert events[0].elapsed > 100

    async def test_fires_complete_event_when_value_is_returned(self):
        events = []

        @async_view
        async def Test(props):
            show, _, _ = use_progress(50)

            use_render_event("complete", events.append)

            show("Initial", "initial")
            await asyncio.sleep(0.025)
            show("Progress")
            await asyncio.sleep(0.1)
            return "Done"

        view = Test({})
        view.mount()

        await asyncio.sleep(0.15)
        assert view.output == "Done"
        assert len(events) == 1
        assert events[0].target is view
        assert events[0].elapsed > 100

    async def test_no_events_after_unmount(self):
        events = []

        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            use_render_event("progress", events.append)
            use_render_event("complete", events.append)

            show("Initial", "initial")
            await asyncio.sleep(0.025)
            show("Progress")
            return "Done"

        view = Test({})
        view.mount()
        view.unmount()

        await asyncio.sleep(0.05)
        assert [evt.type for evt in events] == ["progress"]

    async def test_complete_handler_error_does_not_block_final_output(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            use_render_event("complete", lambda evt: 1 / 0)

            show("Initial", "initial")
            await asyncio.sleep(0.02)
            return "Done"

        view = Test({})
        view.mount()
        assert view.output == "Initial"

        await asyncio.sleep(0.05)
        assert view.output == "Done"


@async_render_test
class TestUsePreviousProps:
    def test_retrieves_previous_props(self):
        @async_view
        async def Greeting(props):
            previous = use_previous_props()
            before = previous["name"] if previous else "nobody"
            return f"{before} -> {props['name']}"

        view = Greeting({"name": "Jane"})
        view.mount()
        assert view.output == "nobody -> Jane"

        view.set_props({"name": "John"})
        assert view.output == "Jane -> John"

        view.set_props({"name": "Jack"})
        assert view.output == "John -> Jack"

    async def test_ignores_props_of_unfinished_cycles(self):
        @async_view
        async def Greeting(props):
            show, _, _ = use_progress()
            previous = use_previous_props()
            before = previous["name"] if previous else "nobody"

            show("...", "always")
            await asyncio.sleep(0.02)
            return f"{before} -> {props['name']}"

        view = Greeting({"name": "Jane"})
        view.mount()
        await asyncio.sleep(0.05)
        assert view.output == "nobody -> Jane"

        # Superseded before it finished
        view.set_props({"name": "John"})
        view.set_props({"name": "Jack"})
        await asyncio.sleep(0.05)

        assert view.output == "Jane -> Jack"


@async_render_test
class TestRerender:
    async def test_same_props_reuse_cycle(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            show("Initial", "initial")
            await asyncio.sleep(0.02)
            return f"Done {props['id']}"

        view = Test({"id": 1})
        view.mount()
        cycle = view.cycle

        view.set_props({"id": 1})
        view.update()

        assert view.cycle is cycle
        assert view.output == "Initial"
        assert view.render_count == 3
        assert len(cycle.progress_log) == 1

    async def test_keeps_previous_output_while_rerendering(self):
        @async_view
        async def Profile(props):
            show, _, _ = use_progress()

            show(f"Loading {props['id']}", "initial")
            await asyncio.sleep(0.05)
            return f"Profile {props['id']}"

        view = Profile({"id": 1})
        outputs = record_outputs(view)
        view.mount()
        assert view.output == "Loading 1"

        await asyncio.sleep(0.1)
        assert view.output == "Profile 1"

        view.set_props({"id": 2})
        assert view.output == "Profile 1"
        assert view.cycle.is_rerendering()

        await asyncio.sleep(0.1)
        assert view.output == "Profile 2"
        assert "Loading 2" not in outputs

    async def test_progress_replaces_previous_output_after_delay(self):
        @async_view(delay_rendered=20)
        async def Profile(props):
            show, _, _ = use_progress()

            show(f"Loading {props['id']}", "initial")
            await asyncio.sleep(0.1)
            return f"Profile {props['id']}"

        view = Profile({"id": 1})
        view.mount()
        await asyncio.sleep(0.15)
        assert view.output == "Profile 1"

        view.set_props({"id": 2})
        assert view.output == "Profile 1"

        await asyncio.sleep(0.05)
        assert view.output == "Loading 2"

        await asyncio.sleep(0.1)
        assert view.output == "Profile 2"

    async def test_always_label_replaces_previous_output(self):
        @async_view
        async def Profile(props):
            show, _, _ = use_progress()

            show(f"Loading {props['id']}", "always")
            await asyncio.sleep(0.05)
            return f"Profile {props['id']}"

        view = Profile({"id": 1})
        view.mount()
        await asyncio.sleep(0.1)

        view.set_props({"id": 2})
        assert view.output == "Loading 2"

    async def test_superseded_cycle_result_is_discarded(self):
        @async_view
        async def Profile(props):
            show, _, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(props["wait"])
            return f"Profile {props['id']}"

        view = Profile({"id": 1, "wait": 0.02})
        outputs = record_outputs(view)
        view.mount()
        view.set_props({"id": 2, "wait": 0.05})

        await asyncio.sleep(0.1)

        assert view.output == "Profile 2"
        assert "Profile 1" not in outputs

    async def test_new_props_replace_progress_of_unfinished_cycle(self):
        @async_view
        async def Profile(props):
            show, _, _ = use_progress()

            show(f"Loading {props['id']}", "initial")
            await asyncio.sleep(0.05)
            return f"Profile {props['id']}"

        view = Profile({"id": 1})
        outputs = record_outputs(view)
        view.mount()
        assert view.output == "Loading 1"

        view.set_props({"id": 2})
        assert view.output == "Loading 2"

        await asyncio.sleep(0.1)
        assert view.output == "Profile 2"
        assert "Profile 1" not in outputs


@async_render_test
class TestErrors:
    async def test_error_is_surfaced(self):
        @async_view
        async def Failing(props):
            show, _, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(0.01)
            raise ValueError("Could not fetch")

        view = Failing({})
        view.mount()
        assert view.output == "Loading"
        assert view.error is None

        await asyncio.sleep(0.05)

        assert isinstance(view.error, ValueError)
        assert str(view.error) == f"An error occured while rendering views {view.name}:\nCould not fetch"

        # Raised again on each invocation, without prefixing the message twice
        error = view.error
        view.update()
        assert view.error is error
        assert str(view.error) == f"An error occured while rendering views {view.name}:\nCould not fetch"

    def test_synchronous_error_is_surfaced(self):
        @async_view
        async def Failing(props):
            raise KeyError("id")

        view = Failing({})
        view.mount()

        assert isinstance(view.error, KeyError)
        assert view.output is None

    async def test_render_raises(self):
        @async_view
        async def Failing(props):
            raise ValueError("Broken")

        view = Failing({})

        with pytest.raises(ValueError, match="Broken"):
            view.render()

    async def test_recovers_with_new_props(self):
        @async_view
        async def Profile(props):
            show, _, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(0.01)
            if props["id"] < 0:
                raise ValueError("Invalid ID")
            return f"Profile {props['id']}"

        view = Profile({"id": -1})
        view.mount()
        await asyncio.sleep(0.05)
        assert isinstance(view.error, ValueError)

        view.set_props({"id": 1})
        assert view.error is None
        # Output of the failed cycle is not carried over
        assert view.output == "Loading"

        await asyncio.sleep(0.05)
        assert view.output == "Profile 1"

    async def test_refresh_retries(self):
        attempts = []

        @async_view
        async def Flaky(props):
            show, _, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(0.01)
            attempts.append(True)
            if len(attempts) == 1:
                raise ConnectionError("Try again")
            return "Done"

        view = Flaky({})
        view.mount()
        await asyncio.sleep(0.05)
        assert isinstance(view.error, ConnectionError)

        view.refresh()
        await asyncio.sleep(0.05)

        assert view.error is None
        assert view.output == "Done"
        assert len(attempts) == 2


@async_render_test
class TestUnmount:
    async def test_unmount_discards_result(self):
        finished = []

        @async_view
        async def Test(props):
            show, check, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(0.02)
            check()
            finished.append(True)
            return "Done"

        view = Test({})
        outputs = record_outputs(view)
        view.mount()
        cycle = view.cycle

        view.unmount()
        await asyncio.sleep(0.05)

        assert cycle.state is CycleState.CANCELLED
        assert view.output == "Loading"
        assert outputs == [None, "Loading"]
        # `check()` interrupted the body
        assert finished == []

    async def test_body_may_poll_for_cancellation(self):
        steps = []

        @async_view
        async def Test(props):
            show, _, _ = use_progress()
            show("Loading", "initial")

            cycle = view.cycle
            for step in range(50):
                if cycle.is_cancelled():
                    return None
                steps.append(step)
                await asyncio.sleep(0.005)
            return "Done"

        view = Test({})
        view.mount()
        await asyncio.sleep(0.02)
        view.unmount()

        count = len(steps)
        await asyncio.sleep(0.05)

        assert len(steps) == count
        assert count < 50


@async_render_test
class TestAsyncViewClass:
    async def test_class_based_view(self):
        class Greeting(AsyncView):
            delay_empty = 0

            async def render_async(self, cycle):
                cycle.show(f"Loading {cycle.props['name']}")
                await asyncio.sleep(0.01)
                return f"Hello {cycle.props['name']}"

        view = Greeting({"name": "Jane"})
        view.mount()
        assert view.output == "Loading Jane"

        await asyncio.sleep(0.05)
        assert view.output == "Hello Jane"
        assert repr(view) == "<TestAsyncViewClass.test_class_based_view.<locals>.Greeting props={'name': 'Jane'}>"

    async def test_render_async_not_implemented(self):
        view = AsyncView({})
        view.mount()

        assert isinstance(view.error, NotImplementedError)

    async def test_views_have_separate_cycles(self):
        @async_view
        async def Test(props):
            show, _, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(0.01)
            return f"Done {props['id']}"

        first = Test({"id": 1})
        second = Test({"id": 2})
        first.mount()
        second.mount()

        assert first.cycle is not second.cycle

        await asyncio.sleep(0.05)
        assert first.output == "Done 1"
        assert second.output == "Done 2"

    def test_async_view_keeps_function_metadata(self):
        @async_view
        async def UserCard(props):
            """Card with user details."""
            return "Card"

        assert UserCard.__name__ == "UserCard"
        assert UserCard.__doc__ == "Card with user details."
        assert issubclass(UserCard, AsyncView)


@async_render_test
class TestSeeds:
    async def test_prerender(self):
        @async_view
        async def Card(props):
            show, _, _ = use_progress()

            show("Loading", "initial")
            await asyncio.sleep(0.01)
            return f"Card {props['id']}"

        view = Card({"id": 1})

        assert await view.prerender() == "Card 1"
        assert view.cycle is None
        assert view.output is None

    async def test_prerender_raises(self):
        @async_view
        async def Card(props):
            await asyncio.sleep(0.01)
            raise ValueError("Broken")

        with pytest.raises(ValueError, match="Broken"):
            await Card({}).prerender()

    async def test_hydration_from_collected_seeds(self):
        calls = []

        @async_view
        async def Card(props):
            show, _, _ = use_progress()

            calls.append(props["id"])
            show("Loading", "initial")
            await asyncio.sleep(0.01)
            return f"Card {props['id']}"

        seeds = await collect_seeds([Card({"id": 1}), Card({"id": 2})])
        assert calls == [1, 2]
        assert [seed.result for seed in seeds] == ["Card 1", "Card 2"]

        plant(seeds)

        view = Card({"id": 2})
        view.mount()

        assert view.output == "Card 2"
        assert view.cycle.state is CycleState.RESOLVED
        assert calls == [1, 2]

        # Later renders run the body as usual
        view.set_props({"id": 3})
        assert view.output == "Card 2"
        await asyncio.sleep(0.05)
        assert view.output == "Card 3"
        assert calls == [1, 2, 3]

    def test_planted_dict_seed(self):
        @async_view
        async def Card(props):
            return "Computed"

        plant([{"identity": Card, "props": {"id": 1}, "result": "Seeded"}])

        view = Card({"id": 1})
        view.mount()

        assert view.output == "Seeded"
